"""
Deadlines for capability calls.

No job manager or repository call may stay pending across reconciliation
ticks. Blocking capability calls are run on a worker thread and awaited with
a deadline; when the deadline passes the call is reported as failed for this
tick (the worker thread cannot be killed, it simply finishes in the
background) and the action is retried on the next tick.

Examples:
    >>> result = await run_with_timeout(job_manager.start_job, 1.0, job, operation="start_job")
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Any, TypeVar

from jobcontroller.core.errors import ErrorCategory, RepositoryError, TransientError

T = TypeVar("T")


class TimeoutExpired(TransientError):
    """Raised when a capability call exceeds its deadline.

    Attributes:
        timeout: The timeout value that was exceeded
        elapsed: How long the call ran before being abandoned
        operation: Name/description of the call
    """

    default_category = ErrorCategory.TIMEOUT

    def __init__(
        self,
        timeout: float,
        elapsed: float | None = None,
        operation: str = "operation",
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.operation = operation

        msg = f"Operation '{operation}' timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (ran for {elapsed:.2f}s)"

        super().__init__(msg)
        self.with_context(operation=operation)


async def run_with_timeout(
    func: Callable[..., T],
    timeout_seconds: float,
    *args: Any,
    operation: str | None = None,
    **kwargs: Any,
) -> T:
    """Run a blocking callable on a worker thread with a deadline.

    Raises:
        TimeoutExpired: If the call exceeds *timeout_seconds*
        Exception: Any exception raised by *func*
    """
    if timeout_seconds <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

    start = time.monotonic()
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(func, *args, **kwargs),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        raise TimeoutExpired(
            timeout=timeout_seconds,
            elapsed=time.monotonic() - start,
            operation=operation or getattr(func, "__name__", "unknown"),
        ) from None


async def run_repository_call(
    func: Callable[..., T],
    timeout_seconds: float,
    *args: Any,
    operation: str,
    **kwargs: Any,
) -> T:
    """``run_with_timeout`` for repository calls: an expired deadline is a ``RepositoryError``."""
    try:
        return await run_with_timeout(func, timeout_seconds, *args, operation=operation, **kwargs)
    except TimeoutExpired as e:
        raise RepositoryError(str(e), cause=e).with_context(operation=operation) from e
