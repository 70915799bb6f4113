"""
Shared rate limiting helpers.

- FixedWindowRateLimiter: per-minute counters keyed by client IP, used by the
  cache store HTTP middleware.
- MinIntervalGate: async spacing between outbound request starts, used by the
  enrichment scheduler so bursts of visible nodes don't hammer the providers.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from fastapi import Request


def get_client_ip(request: Request) -> str:
    # Proxies add X-Forwarded-For; take the first hop
    xff = request.headers.get("x-forwarded-for")
    if xff:
        return xff.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


class FixedWindowRateLimiter:
    """
    Minimal in-process rate limiter (good enough for a single cache process).
    """

    def __init__(self) -> None:
        # key -> (window_epoch_minute, count)
        self._buckets: Dict[str, Tuple[int, int]] = {}

    def allow(self, key: str, limit_per_min: int, now_s: Optional[float] = None) -> bool:
        if limit_per_min <= 0:
            return True
        now_s = now_s if now_s is not None else time.time()
        window = int(now_s // 60)
        prev = self._buckets.get(key)
        if not prev or prev[0] != window:
            self._buckets[key] = (window, 1)
            return True
        if prev[1] >= limit_per_min:
            return False
        self._buckets[key] = (window, prev[1] + 1)
        return True


class MinIntervalGate:
    """
    Guarantees at least `min_interval_s` between successive `wait()` returns.

    Clock and sleep are injectable so tests can drive time deterministically.
    """

    def __init__(
        self,
        min_interval_s: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval_s = max(0.0, float(min_interval_s))
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._next_start: Optional[float] = None

    async def wait(self) -> None:
        async with self._lock:
            now = self._clock()
            if self._next_start is not None and now < self._next_start:
                await self._sleep(self._next_start - now)
                now = self._next_start
            self._next_start = now + self.min_interval_s
