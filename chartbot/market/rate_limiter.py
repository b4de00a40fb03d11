"""Async rate limiter for market-data API calls.

Spaces calls out to a fixed minimum interval. Each provider owns its own
limiter so independent backtests on separate event loops never share a lock.

Usage:
    from chartbot.market.rate_limiter import RateLimiter

    limiter = RateLimiter(calls_per_second=3.0)
    await limiter.acquire()
    # ... make the API call ...
"""

from __future__ import annotations

import asyncio
import time


class RateLimiter:
    """Async rate limiter using a minimum-interval approach.

    Safe within a single asyncio event loop via asyncio.Lock.
    A rate of 0 disables limiting.

    Args:
        calls_per_second: Maximum number of calls allowed per second.
    """

    def __init__(self, calls_per_second: float = 1.0) -> None:
        if calls_per_second < 0:
            msg = f"calls_per_second must be >= 0, got {calls_per_second}"
            raise ValueError(msg)
        self.calls_per_second = calls_per_second
        self.min_interval = 1.0 / calls_per_second if calls_per_second > 0 else 0.0
        self.last_call: float = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a request is allowed under the rate limit."""
        if self.min_interval == 0.0:
            return
        async with self._lock:
            now = time.monotonic()
            wait_time = self.min_interval - (now - self.last_call)
            if wait_time > 0:
                await asyncio.sleep(wait_time)
            self.last_call = time.monotonic()
