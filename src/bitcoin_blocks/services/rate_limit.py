"""Keyed fixed-window rate limiting.

Counters live in Redis when it is reachable and fall back to a bounded
in-process LRU map otherwise. Counts are advisory: losing them only relaxes
a limit, it never corrupts game state.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from threading import Lock
from typing import Final

import redis

from bitcoin_blocks.core.settings import settings

logger = logging.getLogger(__name__)

_LOCAL_CAPACITY: Final[int] = 10_000


class RateLimiter:
    """Fixed-window counter keyed by caller-defined strings."""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        capacity: int = _LOCAL_CAPACITY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis: redis.Redis | None = None
        if redis_url:
            try:
                self._redis = redis.from_url(redis_url)
            except ValueError as exc:
                logger.warning("Invalid REDIS_URL, using in-process rate limits: %s", exc)
                self._redis = None
        self._capacity = max(1, capacity)
        self._clock = clock
        self._local: OrderedDict[str, int] = OrderedDict()
        self._lock = Lock()

    def hit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Count one hit for ``key``; return False when the window is over ``limit``."""
        window = int(self._clock() // window_seconds)
        bucket = f"ratelimit:{key}:{window}"

        if self._redis is not None:
            try:
                pipe = self._redis.pipeline()
                pipe.incr(bucket)
                pipe.expire(bucket, window_seconds)
                count, _ = pipe.execute()
                return int(count) <= limit
            except redis.RedisError as exc:
                logger.warning("Redis unavailable, using in-process rate limits: %s", exc)
                self._redis = None

        with self._lock:
            count = self._local.get(bucket, 0) + 1
            self._local[bucket] = count
            self._local.move_to_end(bucket)
            while len(self._local) > self._capacity:
                self._local.popitem(last=False)
        return count <= limit

    def reset(self) -> None:
        """Forget in-process counters."""
        with self._lock:
            self._local.clear()


class _RateLimiterSingleton:
    """Singleton wrapper for RateLimiter."""

    _instance: RateLimiter | None = None

    @classmethod
    def get_instance(cls) -> RateLimiter:
        if cls._instance is None:
            cls._instance = RateLimiter(settings.redis_url or None)
        return cls._instance


def get_rate_limiter() -> RateLimiter:
    """Return the shared rate limiter."""
    return _RateLimiterSingleton.get_instance()
