"""Shared fixed-window rate limiting backed by Redis counters with a TTL."""
import logging
import math
import time
from typing import Optional

import redis

logger = logging.getLogger(__name__)


class RateLimiter:
    def allow(self, kind: str, key: str, *, limit: int, window_seconds: int = 60, now: Optional[float] = None) -> bool:
        raise NotImplementedError


class RedisRateLimiter(RateLimiter):
    """
    Counters live in Redis so every stateless instance shares the same budget.
    Each window's key expires on its own; nothing has to be swept.

    When Redis cannot be reached the limiter fails open: the request is let
    through and the failure is logged, so an outage of the counter store never
    blocks registrations.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "rl"):
        self.redis = redis_client
        self.prefix = prefix

    def allow(self, kind: str, key: str, *, limit: int, window_seconds: int = 60, now: Optional[float] = None) -> bool:
        """Return True when the operation is still within the allowed budget."""
        if limit <= 0:
            return False
        now = now or time.time()
        window = max(1, int(window_seconds))
        slot = int(math.floor(now / window))
        counter_key = f"{self.prefix}:{kind}:{key}:{slot}:{window}"
        try:
            with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(counter_key)
                pipe.expire(counter_key, window)
                count, _ = pipe.execute()
        except redis.RedisError:
            logger.exception("Rate limit store unavailable, allowing %s request", kind)
            return True
        return int(count) <= limit


class NoopRateLimiter(RateLimiter):
    def allow(self, kind: str, key: str, *, limit: int, window_seconds: int = 60, now: Optional[float] = None) -> bool:
        return True
