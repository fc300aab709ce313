"""Concurrency primitives for talking to external sources.

Every service gets its own RateLimiter - there is no global limit.
Sources that have to poll for a result use bounded backoff instead of
spinning on the endpoint.
"""

import asyncio
import time
from typing import Callable, Awaitable, Iterator, Optional


class RateLimiter:
    """Minimum-interval rate limiter for async operations.

    acquire() blocks until at least `interval` seconds have passed since the
    last permitted call, then records the new call time. The first call
    never waits.

    Clock and sleep are injectable so tests don't have to wait for real.
    """

    def __init__(self,
                 interval: float = 0.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.interval = interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    def set_interval(self, interval: float) -> None:
        if interval < 0:
            raise ValueError(f"rate limit interval must be >= 0, got {interval}")
        self.interval = interval

    @property
    def last_call(self) -> Optional[float]:
        return self._last_call

    async def acquire(self):
        """Wait if needed to respect the rate limit."""
        async with self._lock:
            if self._last_call is not None and self.interval > 0:
                elapsed = self._clock() - self._last_call
                if elapsed < self.interval:
                    await self._sleep(self.interval - elapsed)

            self._last_call = self._clock()


def backoff_delays(base: float = 2.0,
                   factor: float = 2.0,
                   cap: float = 30.0,
                   max_attempts: int = 8) -> Iterator[float]:
    """Yield exponential backoff delays, capped, for a bounded number of attempts.

    backoff_delays(1, 2, 5, 5) -> 1, 2, 4, 5, 5
    """
    delay = base
    for _ in range(max_attempts):
        yield min(delay, cap)
        delay *= factor
