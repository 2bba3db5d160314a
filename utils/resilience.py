"""
utils/resilience.py
-------------------
Generic resilience primitives shared by every outbound call.

* ``with_timeout``       race an awaitable against a deadline
* ``retry_with_backoff`` re-run transient failures with exponential backoff
* ``RetryPolicy``        the knobs for the above, plus ``is_retryable``

Wrapping order used by the clients is rate limit -> retry -> timeout -> call,
so each retry attempt gets its own deadline and the limiter admits the
whole retry loop as one request.

Timeouts are best effort.  The timed-out operation is *abandoned*, not
cancelled: it may still complete later, so anything it writes to shared
state must be idempotent and re-check validity before applying.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Set, TypeVar

import httpx

from utils.api_errors import ApiError

log = logging.getLogger("utils.resilience")

T = TypeVar("T")

# Abandoned operations are kept referenced until they settle
_abandoned: Set[asyncio.Future] = set()


class OperationTimeoutError(TimeoutError):
    """Raised when an operation misses its deadline."""

    def __init__(self, timeout_ms: int, operation_name: str) -> None:
        super().__init__(f'Operation "{operation_name}" timed out after {timeout_ms}ms')
        self.timeout_ms = timeout_ms
        self.operation_name = operation_name


def _reap(fut: asyncio.Future) -> None:
    _abandoned.discard(fut)
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        log.debug("abandoned_operation_failed", extra={"kv": {"error": repr(exc)}})


async def with_timeout(aw: Awaitable[T], timeout_s: float, operation_name: str = "operation") -> T:
    """Await ``aw`` for at most ``timeout_s`` seconds.

    On deadline an ``OperationTimeoutError`` is raised and the underlying
    task keeps running in the background.  Cancelling the caller does
    cancel the task.
    """
    fut = asyncio.ensure_future(aw)
    try:
        done, _ = await asyncio.wait({fut}, timeout=timeout_s)
    except asyncio.CancelledError:
        fut.cancel()
        raise
    if fut in done:
        return fut.result()
    _abandoned.add(fut)
    fut.add_done_callback(_reap)
    timeout_ms = int(timeout_s * 1000)
    log.warning("operation_timeout", extra={"kv": {"operation": operation_name, "timeout_ms": timeout_ms}})
    raise OperationTimeoutError(timeout_ms, operation_name)


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------
def is_retryable_error(err: BaseException) -> bool:
    """Timeouts, network failures, 429 and 5xx are transient; the rest are not."""
    if isinstance(err, TimeoutError):
        return True
    if isinstance(err, ApiError):
        return err.retryable
    if isinstance(err, (httpx.TimeoutException, httpx.NetworkError, ConnectionError)):
        return True
    status = getattr(err, "status_code", None)
    if isinstance(status, int) and status > 0:
        return status == 429 or 500 <= status < 600
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0   # seconds
    max_delay: float = 10.0      # seconds
    backoff_multiplier: float = 2.0
    is_retryable: Callable[[BaseException], bool] = is_retryable_error


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy = RetryPolicy(),
    operation_name: str = "operation",
) -> T:
    """Run ``fn`` up to ``policy.max_retries + 1`` times.

    Non-retryable errors propagate immediately; after the last attempt the
    last error propagates.
    """
    delay = policy.initial_delay
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            if not policy.is_retryable(e):
                log.info("retry_aborted_not_retryable", extra={"kv": {
                    "operation": operation_name, "attempt": attempt, "error": str(e),
                }})
                raise
            if attempt > policy.max_retries:
                log.warning("retry_exhausted", extra={"kv": {
                    "operation": operation_name, "attempts": attempt, "error": str(e),
                }})
                raise
            log.warning("retry_scheduled", extra={"kv": {
                "operation": operation_name,
                "attempt": attempt,
                "max_attempts": policy.max_retries + 1,
                "delay_ms": int(delay * 1000),
                "error": str(e),
            }})
            await asyncio.sleep(delay)
            delay = min(delay * policy.backoff_multiplier, policy.max_delay)

