"""Timeout and retry helper for external calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CallTimeoutError(Exception):
    """An external call did not finish within its timeout."""

    pass


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    timeout: float,
    attempts: int = 2,
    retry_on: tuple[type[BaseException], ...] = (),
    on_retry: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Await an external call with a timeout, retrying transient failures.

    A timeout always counts as transient. Exceptions listed in retry_on are
    transient too; anything else propagates on the first occurrence.

    A timed-out attempt is cancelled, and the next one starts only after the
    cancelled attempt has unwound. Blocking work inside an operation should
    go through ``run_blocking`` so that unwinding waits for it.

    Args:
        operation: Zero-argument factory returning a fresh awaitable per attempt.
        label: Short description for log messages.
        timeout: Seconds allowed per attempt.
        attempts: Total attempts (2 means one automatic retry).
        retry_on: Exception types treated as transient.
        on_retry: Called with (attempt, error) before each retry.

    Returns:
        The operation's result.

    Raises:
        CallTimeoutError: If the final attempt timed out.
        Exception: The final transient error, or the first non-transient one.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        start_time = time.perf_counter()
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except asyncio.TimeoutError:
            last_error = CallTimeoutError(f"{label} timed out after {timeout:.0f}s")
        except retry_on as e:
            last_error = e

        elapsed = time.perf_counter() - start_time
        if attempt < attempts:
            logger.warning(
                f"{label} failed on attempt {attempt}/{attempts} after {elapsed:.2f}s: "
                f"{last_error}; retrying"
            )
            if on_retry is not None:
                on_retry(attempt, last_error)
        else:
            logger.warning(f"{label} failed after {attempts} attempts: {last_error}")

    assert last_error is not None
    raise last_error


async def run_blocking(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking call in a worker thread.

    A thread cannot be interrupted. When the awaiting task is cancelled,
    for example by the timeout in ``call_with_retry``, this waits for the
    thread to finish before the cancellation propagates, so the call never
    outlives its caller and a retry never runs alongside it.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except asyncio.CancelledError:
        await asyncio.wait({future})
        if not future.cancelled():
            # Retrieve it so the abandoned result is not reported as unhandled
            future.exception()
        raise
