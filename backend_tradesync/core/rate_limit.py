"""
Sliding-window rate limiter for upstream APIs.

At most `limit` acquisitions in any `window_sec` interval. Callers over quota
wait for the oldest slot to expire; requests are delayed, never dropped.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable


class SlidingWindowRateLimiter:
    """Sliding-window counter shared by every caller of one upstream."""

    def __init__(
        self,
        limit: int,
        window_sec: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_sec <= 0:
            raise ValueError("window_sec must be positive")
        self._limit = limit
        self._window = window_sec
        self._clock = clock
        self._sleep = sleep
        self._stamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        while self._stamps and now - self._stamps[0] >= self._window:
            self._stamps.popleft()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                self._evict(now)
                if len(self._stamps) < self._limit:
                    self._stamps.append(now)
                    return
                await self._sleep(self._window - (now - self._stamps[0]))

    @property
    def in_window(self) -> int:
        """Acquisitions counted in the current window."""
        self._evict(self._clock())
        return len(self._stamps)
