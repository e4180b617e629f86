"""Request limiters: a per-source sliding window and a resizable concurrency cap."""
from __future__ import annotations

import asyncio
import math
import time
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Optional, Set

from .exceptions import RateLimitSkip
from .models import FeedSource


class SlidingWindowLimiter:
    """
    Counts requests per source over each source's own rolling window.

    A source may make `floor(requests_per_window * safety_factor)` requests per
    window (never less than one). Sources without a rate limit are unrestricted.
    """

    def __init__(self, safety_factor: float = 0.9, *, clock: Callable[[], float] = time.time) -> None:
        if not 0 < safety_factor <= 1:
            raise ValueError("safety_factor must be in (0, 1]")
        self.safety_factor = safety_factor
        self._clock = clock
        self._history: Dict[str, Deque[float]] = defaultdict(deque)

    def allowed(self, source: FeedSource) -> Optional[int]:
        """Requests permitted per window, or None when the source is unlimited."""
        if source.rate_limit is None:
            return None
        return max(1, math.floor(source.rate_limit.requests_per_window * self.safety_factor))

    def count(self, source: FeedSource) -> int:
        """Requests to `source` inside its current window (older events are discarded)."""
        history = self._history.get(source.id)
        if not history:
            return 0
        if source.rate_limit is not None:
            cutoff = self._clock() - source.rate_limit.window
            while history and history[0] <= cutoff:
                history.popleft()
        return len(history)

    def allow(self, source: FeedSource) -> bool:
        limit = self.allowed(source)
        return limit is None or self.count(source) < limit

    def check(self, source: FeedSource) -> None:
        """Raise RateLimitSkip when `source` has used up its window."""
        limit = self.allowed(source)
        if limit is not None and self.count(source) >= limit:
            raise RateLimitSkip(source.id, self.count(source), limit)

    def record(self, source: FeedSource) -> None:
        # Unlimited sources have nothing to enforce; don't let their history grow.
        if source.rate_limit is None:
            return
        self._history[source.id].append(self._clock())

    def tracked(self) -> Set[str]:
        """Ids of sources with request history."""
        return set(self._history)

    def forget(self, source_id: str) -> None:
        self._history.pop(source_id, None)

    def clear(self) -> None:
        self._history.clear()


class ConcurrencyLimiter:
    """
    Async context manager allowing at most `limit` holders at once.

    Unlike asyncio.Semaphore the limit can be changed while slots are held:
    lowering it admits nobody new until enough holders have left, raising it
    wakes waiters right away. Waiters are admitted first come, first served.
    """

    def __init__(self, limit: int) -> None:
        self._check(limit)
        self._limit = limit
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @staticmethod
    def _check(limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    def set_limit(self, limit: int) -> None:
        self._check(limit)
        self._limit = limit
        self._wake()

    async def acquire(self) -> None:
        if self._active < self._limit and not self._waiters:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # Granted a slot but cancelled before running: hand it on.
            if waiter.done() and not waiter.cancelled():
                self.release()
            raise
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    def release(self) -> None:
        self._active -= 1
        self._wake()

    def _wake(self) -> None:
        while self._waiters and self._active < self._limit:
            waiter = self._waiters.popleft()
            if not waiter.done():
                self._active += 1
                waiter.set_result(None)

    async def __aenter__(self) -> "ConcurrencyLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release()
