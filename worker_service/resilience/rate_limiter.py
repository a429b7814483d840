"""Token bucket refilled on a fixed interval."""

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class TokenBucket:
    """
    Allows ``tokens_per_interval`` acquisitions per ``interval_seconds``.

    The bucket is refilled to capacity each time a full interval has passed
    since the last refill. Waiters are served in arrival order.
    """

    def __init__(
        self,
        tokens_per_interval: int,
        interval_seconds: float = 60.0,
        name: str = "bucket",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if tokens_per_interval < 1:
            raise ValueError("tokens_per_interval must be at least 1")
        self.capacity = tokens_per_interval
        self.interval = interval_seconds
        self.name = name
        self.clock = clock
        self._sleep = sleep
        self._tokens = float(tokens_per_interval)
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self.total_waits = 0

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self.clock()
        elapsed = now - self._last_refill
        if elapsed >= self.interval:
            intervals = int(elapsed // self.interval)
            self._tokens = float(self.capacity)
            self._last_refill += intervals * self.interval

    def time_until_refill(self) -> float:
        return max(0.0, self._last_refill + self.interval - self.clock())

    def try_acquire(self, tokens: int = 1) -> bool:
        """Take tokens if available right now."""
        self._refill()
        if self._tokens >= tokens:
            self._tokens -= tokens
            return True
        return False

    async def acquire(self, tokens: int = 1) -> float:
        """
        Wait until ``tokens`` are available and take them.

        Returns:
            Seconds spent waiting
        """
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.capacity}")

        waited = 0.0
        async with self._lock:
            while not self.try_acquire(tokens):
                delay = self.time_until_refill()
                if waited == 0.0:
                    self.total_waits += 1
                    logger.debug(f"Rate limit reached for {self.name}, waiting {delay:.1f}s")
                await self._sleep(delay)
                waited += delay
        return waited
