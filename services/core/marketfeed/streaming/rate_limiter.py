"""Token-bucket rate limiter guarding outbound calls to a price source."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable


logger = logging.getLogger(__name__)


class TokenBucketRateLimiter:
    """
    Token bucket with burst capacity and lazy, interval-based refill.

    Refill happens on each acquire: ``floor(elapsed / refill_interval)`` whole
    intervals worth of tokens are added, capped at capacity. The refill
    timestamp only moves when at least one full interval has elapsed, so
    frequent callers do not lose fractional progress.

    When the bucket is empty the caller sleeps for one refill interval, refills
    and proceeds. Acquirers are serialized by a lock, so a sleeping caller
    holds its place in line and the count stays within ``[0, capacity]``.
    """

    def __init__(
        self,
        capacity: int = 300,
        refill_interval: float = 1.0,
        refill_amount: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize rate limiter.

        Args:
            capacity: Maximum tokens (burst size)
            refill_interval: Seconds per refill step
            refill_amount: Tokens added per refill step
            clock: Monotonic clock (injectable for tests)
            sleep: Async sleep function (injectable for tests)
        """
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if refill_interval <= 0:
            raise ValueError("refill_interval must be positive")
        self.capacity = capacity
        self.refill_interval = refill_interval
        self.refill_amount = max(1, refill_amount)
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self.waits = 0

    @property
    def tokens(self) -> int:
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed < self.refill_interval:
            return
        cycles = math.floor(elapsed / self.refill_interval)
        self._tokens = min(self.capacity, self._tokens + cycles * self.refill_amount)
        self._last_refill = now

    async def acquire(self) -> None:
        """Wait until a token is available, then consume it."""
        async with self._lock:
            self._refill()
            if self._tokens <= 0:
                self.waits += 1
                logger.debug(
                    f"Rate limiter empty ({self._tokens}/{self.capacity}), "
                    f"waiting {self.refill_interval:.2f}s"
                )
                await self._sleep(self.refill_interval)
                self._refill()
            self._tokens -= 1
