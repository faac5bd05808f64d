from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Awaitable, Callable

from hostplane.core.config import get_settings


def _calculate_tokens(*, tokens: float, last_s: float, now_s: float, rate: float, burst: int) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if now_s < last_s:
        last_s = now_s
    return min(float(burst), tokens + (now_s - last_s) * rate)


def _wait_s(tokens: float, *, rate: float, cost: float) -> float:
    # Time until enough tokens accumulate for this call.
    if tokens >= cost:
        return 0.0
    if rate <= 0:
        return 1.0
    return math.ceil(((cost - tokens) / rate) * 1000) / 1000.0


class TokenBucket:
    """Process-local token bucket that makes callers wait instead of rejecting them."""

    def __init__(
        self,
        *,
        rate: float,
        burst: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._rate = float(rate)
        self._burst = max(1, int(burst))
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self._burst)
        self._last = clock()
        self._lock = asyncio.Lock()

    @property
    def available(self) -> float:
        return _calculate_tokens(
            tokens=self._tokens, last_s=self._last, now_s=self._clock(), rate=self._rate, burst=self._burst
        )

    async def acquire(self, cost: float = 1.0) -> float:
        # Serialize waiters so tokens are handed out in arrival order; returns seconds waited.
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._tokens = _calculate_tokens(
                    tokens=self._tokens, last_s=self._last, now_s=now, rate=self._rate, burst=self._burst
                )
                self._last = now
                wait_s = _wait_s(self._tokens, rate=self._rate, cost=cost)
                if wait_s <= 0:
                    self._tokens -= cost
                    return waited
                await self._sleep(wait_s)
                waited += wait_s


_provider_buckets: dict[str, TokenBucket] = {}


def get_provider_bucket(provider: str) -> TokenBucket:
    # One bucket per provider name, shared by every worker in the process.
    bucket = _provider_buckets.get(provider)
    if bucket is None:
        settings = get_settings()
        bucket = TokenBucket(rate=settings.provider_rate_per_s, burst=settings.provider_burst)
        _provider_buckets[provider] = bucket
    return bucket


def reset_provider_buckets() -> None:
    _provider_buckets.clear()
