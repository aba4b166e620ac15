from __future__ import annotations

import asyncio
import time
from typing import Callable


class TokenBucket:
    """Process-wide token bucket: ``burst`` tokens, refilled at ``rate_per_minute``."""

    def __init__(
        self,
        *,
        rate_per_minute: float = 30,
        burst: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._rate = max(rate_per_minute, 1) / 60.0
        self._capacity = float(max(burst, 1))
        self._tokens = self._capacity
        self._clock = clock
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(now - self._updated, 0.0)
        self._updated = now
        self._tokens = min(self._capacity, self._tokens + elapsed * self._rate)

    def try_acquire(self) -> bool:
        self._refill()
        if self._tokens >= 1:
            self._tokens -= 1
            return True
        return False

    async def acquire(self, max_wait: float = 5.0) -> bool:
        """Wait up to ``max_wait`` seconds for a token."""
        async with self._lock:
            deadline = self._clock() + max_wait
            while True:
                if self.try_acquire():
                    return True
                wait = (1 - self._tokens) / self._rate
                if self._clock() + wait > deadline:
                    return False
                await asyncio.sleep(wait)
