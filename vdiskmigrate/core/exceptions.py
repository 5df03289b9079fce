# SPDX-License-Identifier: LGPL-3.0-or-later
# vdiskmigrate/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _clamp_exit_code(code: int) -> int:
    # Exit codes are 0..255.
    try:
        if code < 0:
            return 1
        if code > 255:
            return 255
        return code
    except Exception:
        return 1


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


_SECRET_KEY_PARTS = (
    "pass",
    "password",
    "passwd",
    "secret",
    "token",
    "apikey",
    "api_key",
    "auth",
    "cookie",
    "session",
    "bearer",
    "private",
    "key",
)


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    return any(p in ks for p in _SECRET_KEY_PARTS)


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    # Stable order, redaction, single-line.
    parts = []
    for k in sorted(ctx.keys()):
        v = ctx.get(k)
        if _is_secret_key(str(k)):
            parts.append(f"{k}=<redacted>")
        else:
            parts.append(f"{k}={v!r}")
    return ", ".join(parts)


@dataclass(eq=False)
class VDiskMigrateError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what operators see)
      - context carrying the operation and target identifier
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        if self.context is None:
            self.context = {}
        super().__init__(self.msg)
        self.args = (self.msg,)

    def with_context(self, **ctx: Any) -> "VDiskMigrateError":
        if self.context is None:
            self.context = {}
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        """
        Human-friendly message for logs and status lines.
        """
        base = self.msg or self.__class__.__name__
        parts = [base]

        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context), limit=600)}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        ctx = self.context or {}
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "context": {k: ("<redacted>" if _is_secret_key(str(k)) else v) for k, v in ctx.items()},
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(VDiskMigrateError):
    """
    Operator-facing fatal error (exit code should be honored by the caller).
    """
    pass


class ConfigError(VDiskMigrateError):
    """Missing or malformed configuration."""
    pass


# ---------------------------------------------------------------------------
# Taxonomy
# ---------------------------------------------------------------------------


class ConnectivityError(VDiskMigrateError):
    """
    Session/auth/transport failure. Retried a bounded number of times by the
    owner of the session, then surfaced.
    """
    pass


class NotFoundError(VDiskMigrateError):
    """Named volume, initiator group, device or snapshot is absent. Never retried."""
    pass


class TimeoutKindError(VDiskMigrateError):
    """Expected object did not become visible within the poll ceiling."""
    pass


class PollTimeoutError(TimeoutKindError):
    pass


class DeviceTimeoutError(TimeoutKindError):
    """Device never showed up on the host after rescans."""
    pass


class CancelledError(TimeoutKindError):
    """A wait was aborted by the caller's stop signal."""
    pass


class StateMismatchError(VDiskMigrateError):
    """
    Precondition does not hold (VM not powered off, wrong mapping context, ...).
    Not retried.
    """
    pass


# ---------------------------------------------------------------------------
# Domain errors
# ---------------------------------------------------------------------------


class StorageError(VDiskMigrateError):
    """Array or block-storage API operation failed."""
    pass


class VMwareError(VDiskMigrateError):
    """
    vSphere/vCenter operation failed.
    Use for pyvmomi / SDK / ESXi errors.
    """
    pass


class TransportError(VDiskMigrateError):
    """nbdkit / nbdcopy / libnbd failure."""
    pass


class ReplicationError(VDiskMigrateError):
    pass


class CloneError(VDiskMigrateError):
    """Remote vmkfstools clone failed, stalled or lost its target."""
    pass


class RemoteCommandError(VDiskMigrateError):
    """Remote command on the ESXi host exited non-zero."""
    pass


def wrap_vmware(msg: str, exc: Optional[BaseException] = None, code: int = 50, **context: Any) -> VMwareError:
    return VMwareError(code=code, msg=msg, cause=exc, context=context or None)


def wrap_storage(
    operation: str,
    target: str,
    exc: Optional[BaseException] = None,
    *,
    code: int = 60,
    **context: Any,
) -> StorageError:
    """
    Wrap an array/catalog failure so the operation and target identifier are
    recoverable from the message alone.
    """
    detail = f": {_one_line(str(exc))}" if exc is not None else ""
    ctx: Dict[str, Any] = {"operation": operation, "target": target}
    ctx.update(context)
    return StorageError(code=code, msg=f"{operation} failed for {target}{detail}", cause=exc, context=ctx)


def wrap_transport(operation: str, target: str, exc: Optional[BaseException] = None, **context: Any) -> TransportError:
    detail = f": {_one_line(str(exc))}" if exc is not None else ""
    ctx: Dict[str, Any] = {"operation": operation, "target": target}
    ctx.update(context)
    return TransportError(code=70, msg=f"{operation} failed for {target}{detail}", cause=exc, context=ctx)
