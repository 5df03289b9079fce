# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Percent-based progress reporters for disk copies.

- RichProgressReporter: animated bar on stderr (TTY only)
- LoggingProgressReporter: one status line per step, consumed by the
  external progress reporter

Both can run at once; ``make_progress_reporter`` builds the right set.
"""

from __future__ import annotations

import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn

from ..core.logger import Log


def _is_tty() -> bool:
    try:
        return sys.stderr.isatty()
    except (AttributeError, ValueError):
        return False


class ProgressReporter(ABC):
    @abstractmethod
    def start(self, description: str) -> None:
        ...

    @abstractmethod
    def update(self, percent: int) -> None:
        """Absolute completion, 0..100."""

    @abstractmethod
    def finish(self) -> None:
        ...


class RichProgressReporter(ProgressReporter):
    def __init__(self, console: Any, refresh_hz: float = 4.0):
        self.console = console
        self.refresh_hz = refresh_hz
        self.progress: Optional[Progress] = None
        self.task_id: Optional[int] = None

    def start(self, description: str) -> None:
        self.progress = Progress(
            SpinnerColumn(style="bright_green"),
            TextColumn("[progress.description]{task.description}", style="bold cyan"),
            BarColumn(complete_style="bright_blue", finished_style="bright_green"),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeRemainingColumn(),
            TimeElapsedColumn(),
            console=self.console,
            transient=False,
            refresh_per_second=max(1, int(self.refresh_hz)),
        )
        self.progress.start()
        self.task_id = self.progress.add_task(description, total=100)

    def update(self, percent: int) -> None:
        if self.progress is not None and self.task_id is not None:
            self.progress.update(self.task_id, completed=max(0, min(100, percent)))

    def finish(self) -> None:
        if self.progress is not None:
            self.progress.stop()
            self.progress = None


class LoggingProgressReporter(ProgressReporter):
    """Logs ``<what>, Completed: N%`` whenever progress moved by ``step`` points."""

    def __init__(self, logger: logging.Logger, step: int = 10):
        self.logger = logger
        self.step = step
        self.what = ""
        self.last_logged = 0

    def start(self, description: str) -> None:
        self.what = description
        self.last_logged = 0

    def update(self, percent: int) -> None:
        if percent - self.last_logged >= self.step or (percent >= 100 > self.last_logged):
            self.last_logged = percent
            Log.progress(self.logger, self.what, percent)

    def finish(self) -> None:
        pass


class MultiProgressReporter(ProgressReporter):
    def __init__(self, reporters: List[ProgressReporter]):
        self.reporters = reporters

    def start(self, description: str) -> None:
        for r in self.reporters:
            r.start(description)

    def update(self, percent: int) -> None:
        for r in self.reporters:
            r.update(percent)

    def finish(self) -> None:
        for r in self.reporters:
            r.finish()


def make_progress_reporter(logger: logging.Logger, *, step: int = 10, rich_ui: Optional[bool] = None) -> ProgressReporter:
    reporters: List[ProgressReporter] = [LoggingProgressReporter(logger, step=step)]
    if rich_ui if rich_ui is not None else _is_tty():
        reporters.append(RichProgressReporter(Console(stderr=True)))
    return MultiProgressReporter(reporters)
