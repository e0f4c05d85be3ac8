from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable


class RateLimiter:
    """Token bucket shared by the requests of one job run.

    ``rate_per_second`` tokens refill continuously up to ``burst``. With the
    defaults (5/s, burst 1) consecutive probes start at least 200 ms apart. A
    non-positive rate disables pacing.
    """

    def __init__(
        self,
        rate_per_second: float,
        burst: int = 1,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.rate_per_second = rate_per_second
        self.burst = max(1, burst)
        self._clock = clock
        self._sleep = sleep
        self._tokens = 0.0
        self._updated_at: float | None = None

    @property
    def enabled(self) -> bool:
        return self.rate_per_second > 0

    async def acquire(self) -> float:
        """Take one token, sleeping until it is available. Returns seconds waited."""
        if not self.enabled:
            return 0.0

        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return 0.0

        wait_for = (1.0 - self._tokens) / self.rate_per_second
        await self._sleep(wait_for)
        self._refill()
        self._tokens = max(0.0, self._tokens - 1.0)
        return wait_for

    def _refill(self) -> None:
        now = self._clock()
        if self._updated_at is None:
            self._updated_at = now
            return
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate_per_second)
        self._updated_at = now
