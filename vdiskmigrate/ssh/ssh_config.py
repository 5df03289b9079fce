# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/ssh/ssh_config.py
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional

from ..core.config import as_bool, as_float, as_int, resolve_secret


def _is_probably_ipv6(host: str) -> bool:
    return ":" in (host or "")


def _bracket_host(host: str) -> str:
    h = (host or "").strip()
    if _is_probably_ipv6(h) and not (h.startswith("[") and h.endswith("]")):
        return f"[{h}]"
    return h


def _clean_opt(opt: str) -> str:
    # One line, no embedded newlines.
    o = (opt or "").strip().replace("\r", " ").replace("\n", " ")
    return " ".join(o.split())


@dataclass(frozen=True)
class SSHConfig:
    """
    Connection settings for one ESXi host.

    Key auth is the default. When ``password`` is set the client drives the
    system ssh through ``sshpass -e`` so the secret never lands on argv.
    """
    host: str
    user: str = "root"
    port: int = 22
    identity: Optional[Path] = None
    password: Optional[str] = field(default=None, repr=False)
    ssh_opts: List[str] = field(default_factory=list)

    connect_timeout: int = 10
    keepalive_interval: int = 30
    keepalive_count: int = 3

    jump_host: Optional[str] = None
    strict_host_key_checking: bool = False
    known_hosts_file: Optional[Path] = None

    # transport retry policy (rc 255 / connection errors only)
    retries: int = 2
    retry_sleep: float = 2.0
    command_timeout: Optional[float] = 300.0

    def __post_init__(self) -> None:
        host = (self.host or "").strip()
        if not host:
            raise ValueError("SSHConfig.host must not be empty")
        object.__setattr__(self, "host", host)

        user = (self.user or "").strip()
        if not user:
            raise ValueError("SSHConfig.user must not be empty")
        object.__setattr__(self, "user", user)

        if self.identity is not None:
            object.__setattr__(self, "identity", Path(self.identity).expanduser())

        if self.known_hosts_file is not None:
            object.__setattr__(self, "known_hosts_file", Path(self.known_hosts_file).expanduser())

        if self.jump_host is not None:
            object.__setattr__(self, "jump_host", (self.jump_host or "").strip() or None)

        if self.ssh_opts:
            cleaned: List[str] = []
            for opt in self.ssh_opts:
                o = _clean_opt(opt)
                if o and o not in cleaned:
                    cleaned.append(o)
            object.__setattr__(self, "ssh_opts", cleaned)

        if self.port <= 0 or self.port > 65535:
            raise ValueError(f"Invalid SSH port: {self.port}")

        for name, v in (
            ("connect_timeout", self.connect_timeout),
            ("keepalive_interval", self.keepalive_interval),
            ("keepalive_count", self.keepalive_count),
            ("retries", self.retries),
        ):
            if v < 0:
                raise ValueError(f"{name} must be >= 0 (got {v})")

    @classmethod
    def from_config(cls, conf: Mapping[str, Any], host: str) -> "SSHConfig":
        """Build from the ``esxi_ssh`` section; the host comes from vCenter at run time."""
        opts = conf.get("ssh_opts") or []
        return cls(
            host=host,
            user=str(conf.get("user") or "root"),
            port=as_int(conf.get("port"), 22),
            identity=conf.get("identity") or None,
            password=resolve_secret(conf, "password"),
            ssh_opts=[str(o) for o in opts],
            connect_timeout=as_int(conf.get("connect_timeout"), 10),
            jump_host=conf.get("jump_host") or None,
            strict_host_key_checking=as_bool(conf.get("strict_host_key_checking"), False),
            known_hosts_file=conf.get("known_hosts_file") or None,
            retries=as_int(conf.get("retries"), 2),
            retry_sleep=as_float(conf.get("retry_sleep"), 2.0),
            command_timeout=as_float(conf.get("command_timeout"), 300.0),
        )

    @property
    def uses_password(self) -> bool:
        return bool(self.password) and self.identity is None

    def target(self) -> str:
        return f"{self.user}@{_bracket_host(self.host)}"

    def _hostkey_opts(self) -> List[str]:
        out: List[str] = []
        if self.strict_host_key_checking:
            out += ["-o", "StrictHostKeyChecking=yes"]
        else:
            out += ["-o", "StrictHostKeyChecking=no"]
        if self.known_hosts_file is not None:
            out += ["-o", f"UserKnownHostsFile={self.known_hosts_file}"]
        elif not self.strict_host_key_checking:
            out += ["-o", "UserKnownHostsFile=/dev/null"]
        return out

    def base_cmd(self) -> List[str]:
        """ssh argv up to and including the target (no remote command)."""
        cmd: List[str] = []
        if self.uses_password:
            cmd += ["sshpass", "-e"]
        cmd += [
            "ssh",
            "-p", str(self.port),
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", f"ServerAliveInterval={self.keepalive_interval}",
            "-o", f"ServerAliveCountMax={self.keepalive_count}",
            "-o", "LogLevel=ERROR",
        ]
        if self.uses_password:
            cmd += ["-o", "BatchMode=no", "-o", "PreferredAuthentications=password,keyboard-interactive"]
        else:
            cmd += ["-o", "BatchMode=yes"]

        cmd += self._hostkey_opts()

        if self.identity:
            cmd += ["-i", str(self.identity)]
        if self.jump_host:
            cmd += ["-J", self.jump_host]

        for opt in self.ssh_opts:
            cmd += ["-o", opt]

        cmd.append(self.target())
        return cmd

    def describe(self) -> str:
        parts = [f"{self.user}@{self.host}:{self.port}"]
        if self.identity:
            parts.append(f"key={self.identity}")
        elif self.password:
            parts.append("auth=password")
        if self.jump_host:
            parts.append(f"via={self.jump_host}")
        parts.append("hostkey=strict" if self.strict_host_key_checking else "hostkey=off")
        return " ".join(parts)
