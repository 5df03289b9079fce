# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
# vdiskmigrate/esxi/clone_tracker.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from ..core.logger import Log
from ..core.retry import wait_or_cancel
from .host_operator import CloneTask, ESXiHostOperator, parse_clone_error, parse_clone_percent


class CloneState(str, Enum):
    RUNNING = "running"
    FINISHED = "finished"


class CloneResult(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class CloneStatus:
    state: CloneState
    percent: float
    elapsed_s: float
    result: Optional[CloneResult] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.state == CloneState.FINISHED


class CloneTracker:
    """
    Follows one background vmkfstools clone until it ends.

    Each sample reads the clone log once, takes its last reported percent
    and decides whether the clone is still running. The RDM target is only a
    descriptor, so its size says nothing about progress. A set stop event ends the
    polling loop only; the remote process is left alone.
    """

    def __init__(
        self,
        logger: logging.Logger,
        operator: ESXiHostOperator,
        task: CloneTask,
        *,
        label: str = "disk",
        poll_interval_s: float = 10.0,
        startup_timeout_s: float = 300.0,
        stall_timeout_s: float = 300.0,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger
        self.operator = operator
        self.task = task
        self.label = label
        self.poll_interval_s = float(poll_interval_s)
        self.startup_timeout_s = float(startup_timeout_s)
        self.stall_timeout_s = float(stall_timeout_s)
        self.stop_event = stop_event
        self._clock = clock

        self._started = clock()
        self._last_bucket = -1
        self._last_percent = -1.0
        self._last_progress_at = self._started

    def _log_progress(self, percent: float) -> None:
        bucket = (int(percent) // 5) * 5
        if bucket > self._last_bucket:
            self._last_bucket = bucket
            Log.progress(self.logger, f"Copying disk {self.label}", bucket)

    def _finish(self, result: CloneResult, percent: float, error: Optional[str] = None) -> CloneStatus:
        return CloneStatus(
            state=CloneState.FINISHED,
            percent=percent,
            elapsed_s=self._clock() - self._started,
            result=result,
            error=error,
        )

    def _ended(self, percent: float) -> CloneStatus:
        if not self.operator.path_exists(self.task.target_path):
            return self._finish(
                CloneResult.FAILED, percent,
                f"process ended but target missing: {self.task.target_path}",
            )
        self._log_progress(100.0)
        return self._finish(CloneResult.SUCCEEDED, 100.0)

    def sample(self) -> CloneStatus:
        text = self.operator.read_clone_log(self.task.log_file)
        percent = parse_clone_percent(text)
        self._log_progress(percent)

        error = parse_clone_error(text)
        if error:
            return self._finish(CloneResult.FAILED, percent, f"vmkfstools failed: {error}")

        now = self._clock()
        if percent > self._last_percent:
            self._last_percent = percent
            self._last_progress_at = now

        if self.operator.is_process_running(self.task.pid):
            return CloneStatus(state=CloneState.RUNNING, percent=percent, elapsed_s=now - self._started)

        if percent >= 100.0:
            return self._ended(percent)

        # Process not visible. Partial progress keeps the clone alive until it stalls.
        if percent > 0.0:
            stalled_for = now - self._last_progress_at
            if stalled_for > self.stall_timeout_s:
                return self._finish(
                    CloneResult.FAILED, percent,
                    f"clone stalled at {percent:.0f}% for {stalled_for:.0f}s",
                )
            return CloneStatus(state=CloneState.RUNNING, percent=percent, elapsed_s=now - self._started)

        if not text.strip() and (now - self._started) < self.startup_timeout_s:
            return CloneStatus(state=CloneState.RUNNING, percent=percent, elapsed_s=now - self._started)

        return self._ended(percent)

    def wait(self) -> CloneStatus:
        """Poll until the clone finishes or the stop event fires."""
        self.logger.info("Starting clone monitor for disk %s (PID %d)", self.label, self.task.pid)
        while True:
            status = self.sample()
            if status.finished:
                if status.result == CloneResult.SUCCEEDED:
                    Log.ok(self.logger, f"Disk {self.label} clone completed in {status.elapsed_s:.0f}s")
                else:
                    Log.fail(self.logger, f"Disk {self.label} clone failed: {status.error}")
                return status
            if wait_or_cancel(self.stop_event, self.poll_interval_s):
                self.logger.info("Clone monitoring for disk %s stopped", self.label)
                return self._finish(CloneResult.STOPPED, status.percent)
