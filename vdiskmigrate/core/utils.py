# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/core/utils.py
from __future__ import annotations

import logging
import shlex
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from .exceptions import Fatal

GiB = 1024 * 1024 * 1024

_SECRET_ARG_PREFIXES = ("password=", "passwd=", "pwd=", "token=")


class U:
    @staticmethod
    def human_bytes(n: Optional[int]) -> str:
        if n is None:
            return "unknown"
        x = float(n)
        for unit in ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]:
            if x < 1024 or unit == "PiB":
                return f"{x:.2f} {unit}" if unit != "B" else f"{int(x)} {unit}"
            x /= 1024
        return f"{n} B"

    @staticmethod
    def ceil_gib(size_bytes: int) -> int:
        """Whole GiB needed to hold ``size_bytes`` (3 GiB + 200 B -> 4)."""
        if size_bytes <= 0:
            return 0
        return (int(size_bytes) + GiB - 1) // GiB

    @staticmethod
    def round_up_to_gib(size_bytes: int) -> int:
        return U.ceil_gib(size_bytes) * GiB

    @staticmethod
    def redact_argv(cmd: Sequence[str]) -> List[str]:
        out: List[str] = []
        for a in cmd:
            s = str(a)
            low = s.lower()
            for p in _SECRET_ARG_PREFIXES:
                if low.startswith(p):
                    s = s[: len(p)] + "<redacted>"
                    break
            out.append(s)
        return out

    @staticmethod
    def _pretty_cmd(cmd: Sequence[str]) -> str:
        return " ".join(shlex.quote(x) for x in U.redact_argv(cmd))

    @staticmethod
    def run_cmd(
        logger: logging.Logger,
        cmd: List[str],
        *,
        check: bool = True,
        capture: bool = False,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        cwd: Optional[Union[str, Path]] = None,
        input_text: Optional[str] = None,
        fatal: bool = False,
    ) -> subprocess.CompletedProcess:
        """
        Run a local command.

        - capture=True uses subprocess.run(capture_output=True, text=True)
        - fatal=True wraps failures into Fatal (otherwise re-raises subprocess exceptions)
        - secrets passed as key=value argv entries are redacted in logs
        """
        pretty = U._pretty_cmd(cmd)
        logger.debug("Running: %s", pretty)

        try:
            return subprocess.run(
                cmd,
                check=check,
                capture_output=capture,
                text=True,
                env=env,
                timeout=timeout,
                cwd=str(cwd) if cwd is not None else None,
                input=input_text,
            )

        except subprocess.CalledProcessError as e:
            stdout = (e.stdout or e.output or "").strip()
            stderr = (e.stderr or "").strip()
            if stdout or stderr:
                logger.error(
                    "Command failed: %s%s%s",
                    pretty,
                    f"\nstdout:\n{stdout}" if stdout else "",
                    f"\nstderr:\n{stderr}" if stderr else "",
                )
            else:
                logger.error("Command failed: %s (no output)", pretty)

            if fatal:
                raise Fatal(code=e.returncode or 1, msg=f"Command failed: {pretty}") from e
            raise

        except subprocess.TimeoutExpired as e:
            logger.error("Command timed out: %s (timeout=%ss)", pretty, timeout)
            if fatal:
                raise Fatal(code=124, msg=f"Command timed out: {pretty}") from e
            raise

