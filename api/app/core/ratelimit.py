from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, HTTPException, status

from app.core.auth import Principal
from app.core.config import get_settings
from app.core.security import get_human_principal


class RateLimitExceededError(Exception):
    def __init__(self, key: str, retry_after_seconds: float) -> None:
        super().__init__(f"rate limit exceeded for {key}")
        self.key = key
        self.retry_after_seconds = retry_after_seconds


@dataclass(slots=True)
class _Bucket:
    tokens: float
    updated_at: float


class TokenBucketRateLimiter:
    """Per-actor token buckets.

    ``acquire`` is synchronous and only called from the event loop, so bucket
    updates never interleave. Buckets that have refilled completely are pruned
    once ``max_keys`` is exceeded.
    """

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        *,
        max_keys: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be positive")
        self.capacity = capacity
        self.refill_per_second = refill_per_second
        self.max_keys = max_keys
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._closed = False

    def acquire(self, key: str, cost: float = 1.0) -> None:
        if self._closed:
            raise RuntimeError("rate limiter is closed")

        now = self._clock()
        bucket = self._buckets.get(key)
        if bucket is None:
            if len(self._buckets) >= self.max_keys:
                self._prune(now)
            bucket = _Bucket(tokens=float(self.capacity), updated_at=now)
            self._buckets[key] = bucket
        else:
            elapsed = max(0.0, now - bucket.updated_at)
            bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_per_second)
            bucket.updated_at = now

        if bucket.tokens < cost:
            raise RateLimitExceededError(key, (cost - bucket.tokens) / self.refill_per_second)
        bucket.tokens -= cost

    def remaining(self, key: str) -> float:
        bucket = self._buckets.get(key)
        if bucket is None:
            return float(self.capacity)
        elapsed = max(0.0, self._clock() - bucket.updated_at)
        return min(float(self.capacity), bucket.tokens + elapsed * self.refill_per_second)

    def reset(self) -> None:
        self._buckets.clear()

    def close(self) -> None:
        self._buckets.clear()
        self._closed = True

    def _prune(self, now: float) -> None:
        for key, bucket in list(self._buckets.items()):
            refilled = bucket.tokens + (now - bucket.updated_at) * self.refill_per_second
            if refilled >= self.capacity:
                del self._buckets[key]


@lru_cache
def get_rate_limiter() -> TokenBucketRateLimiter:
    settings = get_settings()
    return TokenBucketRateLimiter(
        capacity=settings.rate_limit_capacity,
        refill_per_second=settings.rate_limit_refill_per_second,
    )


async def rate_limited_principal(
    principal: Principal = Depends(get_human_principal),
    limiter: TokenBucketRateLimiter = Depends(get_rate_limiter),
) -> Principal:
    try:
        limiter.acquire(principal.actor_id or principal.subject)
    except RateLimitExceededError as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="too many actions, please slow down",
            headers={"Retry-After": str(max(1, math.ceil(exc.retry_after_seconds)))},
        ) from exc
    return principal
