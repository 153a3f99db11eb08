"""Retry with exponential backoff, and a best-effort timeout."""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from xlmirror.contracts.errors import InputValidationError, OperationTimeoutError
from xlmirror.observe.logging import get_logger

T = TypeVar("T")

log = get_logger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY = 1.0
DEFAULT_TIMEOUT = 30.0


def with_retry(
    operation: Callable[[], T],
    max_attempts: int = DEFAULT_ATTEMPTS,
    initial_delay: float = DEFAULT_DELAY,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``operation`` up to ``max_attempts`` times, doubling the delay after each failure.

    Only exceptions in ``retry_on`` are retried; anything else, and the
    last retryable failure, propagates unchanged.
    """
    if max_attempts < 1:
        raise InputValidationError(f"max_attempts must be >= 1, got {max_attempts}")
    delay = initial_delay
    for attempt in range(1, max_attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            log.warning(
                "retry.failed",
                operation=description,
                attempt=attempt,
                max_attempts=max_attempts,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if attempt == max_attempts:
                raise
            sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")


def with_timeout(
    operation: Callable[[], T],
    limit: float | None = DEFAULT_TIMEOUT,
    *,
    description: str = "operation",
) -> T:
    """Run ``operation`` on a worker thread and give up after ``limit`` seconds.

    The worker is abandoned, not killed: a timed-out operation may still be
    running when :class:`OperationTimeoutError` is raised.  ``limit=None``
    runs the operation inline.
    """
    if limit is None:
        return operation()
    if limit <= 0:
        raise InputValidationError(f"timeout must be > 0, got {limit}")
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="xlmirror-timeout")
    future = executor.submit(operation)
    try:
        return future.result(timeout=limit)
    except FutureTimeoutError as exc:
        # Same class as the builtin TimeoutError: a finished future raised it itself
        if future.done():
            return future.result()
        future.cancel()
        log.warning("timeout.exceeded", operation=description, limit_seconds=limit)
        raise OperationTimeoutError(
            f"{description} did not finish within {limit:g}s",
            details={"operation": description, "limit_seconds": limit},
        ) from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
