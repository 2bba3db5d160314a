"""
utils/rate_limiter.py
---------------------
Sliding-window rate limiter with an optional token-weight budget.

Callers hand work to ``throttle``; it is queued FIFO and a single drain
task admits the head of the queue once both windows have headroom.
Admission is serialised but execution is not: admitted calls run
concurrently as separate tasks.

One limiter per upstream API, created at startup and passed to the
clients that need it (see ``utils.services``).
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Set, Tuple

from utils.settings import _get_float, _get_int

log = logging.getLogger("utils.rate_limiter")

# Per-API budgets
TICKETING_MAX_REQUESTS: int = _get_int("TICKETING_RATE_MAX_REQUESTS", 10)
TICKETING_WINDOW_S: float   = _get_float("TICKETING_RATE_WINDOW_S", 60.0)
LLM_MAX_REQUESTS: int       = _get_int("LLM_RATE_MAX_REQUESTS", 200)
LLM_MAX_TOKENS: int         = _get_int("LLM_RATE_MAX_TOKENS", 40000)
LLM_WINDOW_S: float         = _get_float("LLM_RATE_WINDOW_S", 60.0)


def estimate_tokens(text: str) -> int:
    """Rough token estimate for an LLM prompt: ~3 tokens per word plus overhead."""
    words = len((text or "").split())
    return math.ceil(words * 3) + 50


class RateLimiterClosed(RuntimeError):
    pass


_Pending = Tuple[Callable[[], Awaitable[Any]], int, asyncio.Future]


class RateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_s: float = 60.0,
        max_tokens: Optional[int] = None,
        name: str = "default",
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        self.name = name
        self.max_requests = max_requests
        self.window_s = window_s
        self.max_tokens = max_tokens
        self._requests: Deque[float] = deque()
        self._tokens: Deque[Tuple[float, int]] = deque()
        self._queue: Deque[_Pending] = deque()
        self._drain_task: Optional[asyncio.Task] = None
        self._running: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    async def throttle(self, fn: Callable[[], Awaitable[Any]], tokens: int = 0) -> Any:
        """Run ``fn()`` once both windows allow it and return its result."""
        if self._closed:
            raise RateLimiterClosed(f"rate limiter '{self.name}' is closed")
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._queue.append((fn, max(0, int(tokens)), fut))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = loop.create_task(self._drain())
        return await fut

    async def aclose(self) -> None:
        """Stop admitting work; queued callers get ``RateLimiterClosed``."""
        self._closed = True
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        while self._queue:
            _, _, fut = self._queue.popleft()
            if not fut.done():
                fut.set_exception(RateLimiterClosed(f"rate limiter '{self.name}' is closed"))

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------
    async def _drain(self) -> None:
        while self._queue:
            fn, tokens, fut = self._queue[0]
            if fut.done():
                # caller was cancelled while waiting
                self._queue.popleft()
                continue

            now = time.monotonic()
            self._purge(now)
            wait = self._wait_time(now, tokens)
            if wait > 0:
                log.warning("rate_limit_throttled", extra={"kv": {
                    "limiter": self.name,
                    "wait_ms": int(wait * 1000),
                    "queue_length": len(self._queue),
                }})
                await asyncio.sleep(wait)
                continue

            self._queue.popleft()
            self._requests.append(now)
            if self.max_tokens and tokens:
                self._tokens.append((now, tokens))
            task = asyncio.ensure_future(self._run(fn, fut))
            self._running.add(task)
            task.add_done_callback(self._running.discard)

    @staticmethod
    async def _run(fn: Callable[[], Awaitable[Any]], fut: asyncio.Future) -> None:
        try:
            result = await fn()
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            if not fut.done():
                fut.set_exception(e)
        else:
            if not fut.done():
                fut.set_result(result)

    def _purge(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()
        while self._tokens and self._tokens[0][0] <= cutoff:
            self._tokens.popleft()

    def _wait_time(self, now: float, tokens: int) -> float:
        """Seconds until the head of the queue fits in both windows (0 = admit now)."""
        waits = []
        if len(self._requests) >= self.max_requests:
            waits.append(self._requests[0] + self.window_s - now)

        if self.max_tokens and tokens and self._tokens:
            used = sum(t for _, t in self._tokens)
            if used + tokens > self.max_tokens:
                remaining = used
                for ts, t in self._tokens:
                    remaining -= t
                    if remaining + tokens <= self.max_tokens:
                        waits.append(ts + self.window_s - now)
                        break
                else:
                    # heavier than the whole budget: wait for an empty window
                    waits.append(self._tokens[-1][0] + self.window_s - now)

        return max(waits, default=0.0)
