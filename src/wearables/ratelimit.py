"""Sliding-window request budget for outbound provider calls."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Awaitable, Callable

logger = logging.getLogger("wearsync.wearables.ratelimit")


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` acquisitions in any ``window_seconds`` span.

    Timestamps of granted slots are kept in a deque.  When the budget is
    spent, ``acquire()`` sleeps until the oldest slot leaves the window.  The
    request client holds its queue lock around ``acquire()``, so waiters are
    served in arrival order.

    Args:
        max_requests:   Budget per window.
        window_seconds: Window width.
        clock:          Monotonic clock, injectable for tests.
        sleep:          Coroutine used to wait, injectable for tests.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        name: str = "",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._granted: deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._granted and self._granted[0] <= now - self.window_seconds:
            self._granted.popleft()

    @property
    def in_window(self) -> int:
        """Slots used in the current window."""
        self._evict(self._clock())
        return len(self._granted)

    def wait_time(self) -> float:
        """Seconds until a slot frees up, 0 if one is free now."""
        now = self._clock()
        self._evict(now)
        if len(self._granted) < self.max_requests:
            return 0.0
        return max(0.0, self._granted[0] + self.window_seconds - now)

    async def acquire(self) -> None:
        """Take one slot, sleeping while the window is full."""
        while True:
            delay = self.wait_time()
            if delay <= 0:
                self._granted.append(self._clock())
                return
            logger.warning(
                "%s rate budget exhausted (%d/%.0fs), waiting %.2fs",
                self.name or "provider",
                self.max_requests,
                self.window_seconds,
                delay,
            )
            await self._sleep(delay)
