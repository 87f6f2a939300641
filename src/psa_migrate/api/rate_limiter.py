"""Request pacing for ordinary PSA API calls.

Upload byte budgets are handled separately by the migration throttle; this
limiter only spaces out individual requests.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional


class RateLimiter:
    """Token bucket shared by every request a client sends."""

    def __init__(
        self,
        requests_per_second: float = 5.0,
        burst: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize rate limiter.

        Args:
            requests_per_second: Sustained request rate
            burst: Bucket capacity, defaults to one second of requests
        """
        self.requests_per_second = requests_per_second
        self.capacity = burst if burst is not None else max(1.0, requests_per_second)
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(
            self.capacity,
            self.tokens + (now - self._updated) * self.requests_per_second,
        )
        self._updated = now

    def delay(self) -> float:
        """Seconds until the next token is available."""
        self._refill()
        if self.tokens >= 1:
            return 0.0
        return (1 - self.tokens) / self.requests_per_second

    async def acquire(self) -> None:
        """Take one token, waiting for the bucket to refill if it is empty."""
        async with self._lock:
            wait = self.delay()
            if wait > 0:
                await self._sleep(wait)
                self._refill()
            self.tokens -= 1
