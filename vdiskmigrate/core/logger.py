# SPDX-License-Identifier: LGPL-3.0-or-later
from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from termcolor import colored

DEFAULT_LOGGER_NAME = "vdiskmigrate"

TRACE = 5
if not hasattr(logging, "TRACE"):
    logging.TRACE = TRACE  # type: ignore[attr-defined]
    logging.addLevelName(TRACE, "TRACE")

_LEVEL_COLOR = {
    "TRACE": "cyan",
    "DEBUG": "blue",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red",
}

_REDACT_KEYS = ("password", "passwd", "secret", "token")

Ctx = Mapping[str, Any]


def _redacted(ctx: Ctx) -> Dict[str, Any]:
    return {
        k: ("<redacted>" if any(r in str(k).lower() for r in _REDACT_KEYS) else v)
        for k, v in ctx.items()
    }


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    LoggerAdapter that carries a persistent context dict.
    Call sites can also pass `extra={"ctx": {...}}` which merges on top.

    Usage:
      log = Log.bind(logger, vm="db01")
      log.info("Iteration %d: incremental copy", 2, extra={"ctx": {"disk": "Hard disk 1"}})
    """

    def __init__(self, logger: logging.Logger, ctx: Optional[Ctx] = None):
        super().__init__(logger, extra={"ctx": dict(ctx or {})})

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        extra = kwargs.get("extra") or {}
        extra["ctx"] = {**self.extra["ctx"], **(extra.get("ctx") or {})}
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **ctx: Any) -> "ContextLoggerAdapter":
        return ContextLoggerAdapter(self.logger, {**self.extra["ctx"], **ctx})


class ConsoleFormatter(logging.Formatter):
    """`HH:MM:SS LEVEL [logger] message k=v`; colored only on a tty."""

    def __init__(self, *, color: bool = True, detailed: bool = False):
        super().__init__()
        self._color = color
        self._detailed = detailed

    def format(self, record: logging.LogRecord) -> str:
        dt = _dt.datetime.fromtimestamp(record.created)
        ts = dt.strftime("%H:%M:%S.%f")[:-3] if self._detailed else dt.strftime("%H:%M:%S")
        lvl = f"{record.levelname:<8}"
        msg = record.getMessage()
        if self._color and sys.stderr.isatty():
            color = _LEVEL_COLOR.get(record.levelname)
            lvl = colored(lvl, color)
            if record.levelno >= logging.WARNING:
                msg = colored(msg, color, attrs=["bold"])

        line = f"{ts} {lvl}"
        if self._detailed:
            line += f" [{record.name} {record.module}:{record.lineno}]"
        line += f" {msg}"
        ctx = getattr(record, "ctx", None)
        if ctx:
            line += " " + " ".join(f"{k}={v}" for k, v in sorted(_redacted(ctx).items()))
        if record.exc_info:
            line += "\n" + "\n".join("  " + ln for ln in self.formatException(record.exc_info).splitlines())
        return line


class JsonFormatter(logging.Formatter):
    """
    NDJSON formatter (one JSON object per line). This is the shape consumed by
    the external progress reporter.
    """

    def __init__(self, *, include_src: bool = True):
        super().__init__()
        self._include_src = bool(include_src)

    def format(self, record: logging.LogRecord) -> str:
        obj: Dict[str, Any] = {
            "ts": _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "pid": os.getpid(),
        }
        if self._include_src:
            obj.update({"module": record.module, "lineno": record.lineno})

        ctx = getattr(record, "ctx", None)
        if ctx:
            obj["ctx"] = _redacted(ctx)

        if record.exc_info:
            obj["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else "Exception"
            obj["traceback"] = self.formatException(record.exc_info)

        return json.dumps(obj, ensure_ascii=False, default=str)


def _extra(ctx: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    return {"ctx": ctx} if ctx else None


class Log:
    @staticmethod
    def _level_from_flags(verbose: int, quiet: int) -> int:
        """
          quiet=1: WARNING, quiet>=2: ERROR
          verbose 0/1: INFO, 2: DEBUG, 3+: TRACE
        Quiet wins over verbose if both are set.
        """
        if quiet >= 2:
            return logging.ERROR
        if quiet == 1:
            return logging.WARNING
        if verbose >= 3:
            return TRACE
        if verbose >= 2:
            return logging.DEBUG
        return logging.INFO

    @staticmethod
    def bind(logger: Union[logging.Logger, logging.LoggerAdapter], **ctx: Any) -> ContextLoggerAdapter:
        """Return a LoggerAdapter that carries a persistent context dict."""
        if isinstance(logger, ContextLoggerAdapter):
            return logger.bind(**ctx)
        return ContextLoggerAdapter(logger, ctx)  # type: ignore[arg-type]

    @staticmethod
    def banner(logger: logging.Logger, title: str, *, char: str = "─") -> None:
        width = 72
        t = f" {title.strip()} "
        side = char * max(8, (width - len(t)) // 2)
        logger.info((side + t + side)[:width])

    @staticmethod
    def step(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.info("➡️  %s", msg, extra=_extra(ctx))

    @staticmethod
    def ok(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.info("✅ %s", msg, extra=_extra(ctx))

    @staticmethod
    def warn(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.warning("⚠️  %s", msg, extra=_extra(ctx))

    @staticmethod
    def fail(logger: logging.Logger, msg: str, **ctx: Any) -> None:
        logger.error("💥 %s", msg, extra=_extra(ctx))

    @staticmethod
    def progress(logger: logging.Logger, what: str, percent: int, **ctx: Any) -> None:
        """Status line for the progress reporter: '<what>, Completed: N%'."""
        logger.info("%s, Completed: %d%%", what, int(percent), extra=_extra(ctx))

    @staticmethod
    def setup(
        verbose: int = 0,
        log_file: Optional[str] = None,
        *,
        quiet: int = 0,
        color: bool = True,
        logger_name: str = DEFAULT_LOGGER_NAME,
        json_logs: bool = False,
    ) -> logging.Logger:
        """
        Configure and return the project's logger.

        - json_logs=True emits NDJSON on stderr (for log shipping / progress parsing).
        - log_file adds a non-colored file handler with full prefixes.
        """
        logger = logging.getLogger(logger_name)
        logger.propagate = False

        level = Log._level_from_flags(verbose, quiet)
        logger.setLevel(level)

        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()

        handlers = [(logging.StreamHandler(stream=sys.stderr),
                     JsonFormatter() if json_logs else ConsoleFormatter(color=color, detailed=verbose >= 3))]
        if log_file:
            fp = Path(log_file).expanduser().resolve()
            fp.parent.mkdir(parents=True, exist_ok=True)
            handlers.append((logging.FileHandler(fp, encoding="utf-8"),
                             JsonFormatter() if json_logs else ConsoleFormatter(color=False, detailed=True)))

        for handler, fmt in handlers:
            handler.setLevel(level)
            handler.setFormatter(fmt)
            logger.addHandler(handler)

        logger.debug("Logger initialized (level=%s, pid=%s)", logging.getLevelName(level), os.getpid())
        return logger
