# SPDX-License-Identifier: LGPL-3.0-or-later
# -*- coding: utf-8 -*-
"""
Retry and polling utilities.

Two shapes of waiting are used throughout the data plane:

* retry with exponential backoff for connectivity failures
  (``retry_with_backoff`` / ``retry_operation``)
* fixed-interval polling with an attempt ceiling for visibility races
  (``poll_until``), which also honors a caller supplied stop signal
"""

from __future__ import annotations

import logging
import random
import threading
import time
from functools import wraps
from typing import Any, Callable, Optional, Tuple, Type, TypeVar, Union

from .exceptions import CancelledError, PollTimeoutError, TimeoutKindError

T = TypeVar("T")


def retry_with_backoff(
    max_attempts: int = 3,
    base_backoff_s: float = 2.0,
    max_backoff_s: float = 60.0,
    jitter_s: float = 1.0,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception,
    logger: Optional[logging.Logger] = None,
    log_level: int = logging.WARNING,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    Decorator to retry a function with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        base_backoff_s: Base backoff time in seconds (default: 2.0)
        max_backoff_s: Maximum backoff time in seconds (default: 60.0)
        jitter_s: Random jitter to add to backoff in seconds (default: 1.0)
        exceptions: Exception type(s) to catch and retry (default: Exception)
        logger: Logger to use for warnings (default: None, no logging)
        log_level: Log level for retry messages (default: logging.WARNING)

    Example:
        @retry_with_backoff(max_attempts=5, exceptions=ConnectivityError)
        def login():
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return retry_operation(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                base_backoff_s=base_backoff_s,
                max_backoff_s=max_backoff_s,
                jitter_s=jitter_s,
                exceptions=exceptions,
                operation_name=func.__name__,
                logger=logger,
                log_level=log_level,
            )

        return wrapper

    return decorator


def retry_operation(
    operation: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_backoff_s: float = 2.0,
    max_backoff_s: float = 60.0,
    jitter_s: float = 1.0,
    exceptions: Union[Type[Exception], Tuple[Type[Exception], ...]] = Exception,
    operation_name: str = "operation",
    logger: Optional[logging.Logger] = None,
    log_level: int = logging.WARNING,
) -> T:
    """
    Retry an operation (function call) with exponential backoff.

    This is a non-decorator version for one-off retry operations.

    Example:
        array_info = retry_operation(
            lambda: array.get(),
            max_attempts=5,
            operation_name="pure login",
            logger=my_logger,
        )
    """
    last_exception: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except exceptions as e:
            last_exception = e

            if attempt < max_attempts:
                sleep_time = min(base_backoff_s * (2 ** (attempt - 1)), max_backoff_s)
                if jitter_s > 0:
                    sleep_time += random.uniform(0, jitter_s)

                if logger:
                    logger.log(
                        log_level,
                        "%s failed (attempt %d/%d): %s. Retrying in %.2fs...",
                        operation_name,
                        attempt,
                        max_attempts,
                        e,
                        sleep_time,
                    )

                time.sleep(sleep_time)
            else:
                if logger:
                    logger.log(
                        logging.ERROR,
                        "%s failed after %d attempts: %s",
                        operation_name,
                        max_attempts,
                        e,
                    )

    if last_exception:
        raise last_exception

    raise RuntimeError(f"{operation_name} failed with no exception recorded")


def wait_or_cancel(stop_event: Optional[threading.Event], seconds: float) -> bool:
    """
    Sleep for ``seconds`` unless ``stop_event`` fires first.
    Returns True when the sleep was interrupted.
    """
    if seconds <= 0:
        return bool(stop_event is not None and stop_event.is_set())
    if stop_event is None:
        time.sleep(seconds)
        return False
    return stop_event.wait(seconds)


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    interval_s: float,
    max_attempts: Optional[int] = None,
    timeout_s: Optional[float] = None,
    stop_event: Optional[threading.Event] = None,
    operation_name: str = "poll",
    logger: Optional[logging.Logger] = None,
    timeout_error: Type[TimeoutKindError] = PollTimeoutError,
    **context: Any,
) -> T:
    """
    Call ``check`` every ``interval_s`` seconds until it returns something truthy.

    The loop is bounded by ``max_attempts`` and/or ``timeout_s``; at least one
    must be given. A set ``stop_event`` aborts promptly with CancelledError.
    On exhaustion ``timeout_error`` is raised with ``context`` attached.
    """
    if max_attempts is None and timeout_s is None:
        raise ValueError("poll_until needs max_attempts or timeout_s")

    start = time.monotonic()
    attempt = 0
    while True:
        if stop_event is not None and stop_event.is_set():
            raise CancelledError(code=75, msg=f"{operation_name} cancelled", context=dict(context))

        attempt += 1
        result = check()
        if result:
            return result

        if logger:
            logger.debug("%s: not ready (attempt %d%s)", operation_name, attempt,
                         f"/{max_attempts}" if max_attempts else "")

        out_of_attempts = max_attempts is not None and attempt >= max_attempts
        out_of_time = timeout_s is not None and (time.monotonic() - start) >= timeout_s
        if out_of_attempts or out_of_time:
            ctx = dict(context)
            ctx.update({"attempts": attempt, "elapsed_s": round(time.monotonic() - start, 2)})
            raise timeout_error(code=124, msg=f"{operation_name} timed out after {attempt} attempts", context=ctx)

        if wait_or_cancel(stop_event, interval_s):
            raise CancelledError(code=75, msg=f"{operation_name} cancelled", context=dict(context))
