# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from ..core.exceptions import ConnectivityError, RemoteCommandError
from ..core.utils import U
from .ssh_config import SSHConfig

_TRANSIENT_MARKERS = (
    "connection timed out",
    "connection refused",
    "no route to host",
    "network is unreachable",
    "could not resolve hostname",
    "temporary failure in name resolution",
    "kex_exchange_identification",
    "connection reset by peer",
    "broken pipe",
    "connection closed",
)


@dataclass(frozen=True)
class SSHResult:
    rc: int
    stdout: str
    stderr: str
    argv: List[str]
    seconds: float

    @property
    def ok(self) -> bool:
        return self.rc == 0


class SSHClient:
    """
    Remote command runner built on the system ssh binary.

    One client is owned by one orchestration call; it keeps no connection
    state so ``close()`` only marks it unusable.
    """

    def __init__(self, logger: logging.Logger, cfg: SSHConfig):
        self.logger = logger
        self.cfg = cfg
        self._retries = int(cfg.retries)
        self._retry_sleep = float(cfg.retry_sleep)
        self._closed = False

    # ----------------------------
    # command helpers
    # ----------------------------

    def _remote_sh(self, cmd: str) -> str:
        """
        Wrap the remote command so it runs under POSIX sh -c with proper quoting.
        ESXi's busybox ash does not support login shells.
        """
        return f"sh -c {shlex.quote(cmd)}"

    def _env(self) -> Optional[Dict[str, str]]:
        if not self.cfg.uses_password:
            return None
        env = dict(os.environ)
        env["SSHPASS"] = self.cfg.password or ""
        return env

    def _run_local(self, argv: Sequence[str], *, timeout: Optional[float]) -> SSHResult:
        """
        Execute the local ssh command. Never raises on rc!=0.
        TimeoutExpired still propagates from U.run_cmd.
        """
        t0 = time.monotonic()
        cp = U.run_cmd(self.logger, list(argv), check=False, capture=True, timeout=timeout, env=self._env())
        return SSHResult(
            rc=int(cp.returncode or 0),
            stdout=cp.stdout or "",
            stderr=cp.stderr or "",
            argv=list(argv),
            seconds=time.monotonic() - t0,
        )

    @staticmethod
    def _looks_transient(res: Optional[SSHResult], exc: Optional[BaseException]) -> bool:
        """
        Retry only on connection/transport failures (ssh exit 255 or transport
        markers), never on normal remote command failures.
        """
        if isinstance(exc, subprocess.TimeoutExpired):
            return True
        if res is None:
            return False
        if res.rc == 255:
            return True
        s = (res.stderr or "").lower()
        return any(m in s for m in _TRANSIENT_MARKERS)

    def _raise_on_failure(self, res: SSHResult, cmd: str) -> None:
        if res.rc == 0:
            return
        if self._looks_transient(res, None):
            raise ConnectivityError(
                code=65,
                msg=f"ssh to {self.cfg.host} failed (rc={res.rc}): {(res.stderr or '').strip()}",
                context={"host": self.cfg.host, "command": cmd},
            )
        raise RemoteCommandError(
            code=66,
            msg=f"remote command failed on {self.cfg.host} (rc={res.rc}): {(res.stderr or res.stdout or '').strip()}",
            context={"host": self.cfg.host, "command": cmd, "rc": res.rc},
        )

    # ----------------------------
    # public API
    # ----------------------------

    def run(self, cmd: str, *, timeout: Optional[float] = None, check: bool = True) -> SSHResult:
        """
        Run a command on the remote host.

        - retries (cfg.retries) ONLY for transient transport failures
        - if check=True, raises RemoteCommandError on rc!=0 and
          ConnectivityError when the transport never came up
        """
        if self._closed:
            raise ConnectivityError(code=65, msg=f"ssh session to {self.cfg.host} is closed",
                                    context={"host": self.cfg.host})

        argv = self.cfg.base_cmd() + [self._remote_sh(cmd)]
        eff_timeout = timeout if timeout is not None else self.cfg.command_timeout
        attempts = 1 + self._retries

        for attempt in range(1, attempts + 1):
            try:
                res = self._run_local(argv, timeout=eff_timeout)
            except subprocess.TimeoutExpired as e:
                if attempt < attempts:
                    self.logger.warning(
                        "SSH command timed out on %s (attempt %d/%d); retrying in %.1fs",
                        self.cfg.host, attempt, attempts, self._retry_sleep,
                    )
                    time.sleep(self._retry_sleep)
                    continue
                raise ConnectivityError(
                    code=124,
                    msg=f"ssh command timed out on {self.cfg.host} after {eff_timeout}s",
                    cause=e,
                    context={"host": self.cfg.host, "command": cmd},
                )

            if attempt < attempts and self._looks_transient(res, None):
                self.logger.warning(
                    "SSH transport issue on %s (attempt %d/%d, rc=%d); retrying in %.1fs",
                    self.cfg.host, attempt, attempts, res.rc, self._retry_sleep,
                )
                time.sleep(self._retry_sleep)
                continue

            if check:
                self._raise_on_failure(res, cmd)
            return res

        raise ConnectivityError(code=65, msg=f"ssh to {self.cfg.host} failed with no result",
                                context={"host": self.cfg.host, "command": cmd})

    def ssh(self, cmd: str, *, timeout: Optional[float] = None) -> str:
        """Returns stripped stdout, raises on failure."""
        return self.run(cmd, timeout=timeout, check=True).stdout.strip()

    def check(self) -> None:
        out = self.ssh("echo OK", timeout=30)
        if out != "OK":
            raise ConnectivityError(code=65, msg=f"SSH connectivity check failed: {out!r}",
                                    context={"host": self.cfg.host})
        self.logger.debug("SSH connectivity OK (%s)", self.cfg.describe())

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> "SSHClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.close()
        return False

    # ----------------------------
    # argument-based shell tests
    # ----------------------------

    def _shell_test(self, script: str, arg1: str, *, timeout: float = 30) -> str:
        """
        Run a small sh script with one positional argument ($1).
        Returns stdout; rc!=0 is not an error (scripts print deterministically).
        """
        payload = f"sh -c {shlex.quote(script)} -- {shlex.quote(arg1)}"
        res = self.run(payload, timeout=timeout, check=False)
        if res.rc == 255:
            self._raise_on_failure(res, payload)
        return (res.stdout or "").strip()

    def exists(self, remote: str) -> bool:
        return self._shell_test('if [ -e "$1" ]; then printf 1; else printf 0; fi', remote) == "1"

    def is_dir(self, remote: str) -> bool:
        return self._shell_test('if [ -d "$1" ]; then printf 1; else printf 0; fi', remote) == "1"

    def read_text(self, remote: str) -> str:
        """Read a remote file; missing or unreadable files read as ''."""
        return self._shell_test('cat "$1" 2>/dev/null || true', remote)
