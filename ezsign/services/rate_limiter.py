"""
Rate Limiter Service using Redis sorted sets (sliding window).

Bounds how many jobs a queue's workers start per window, so a burst of
deliveries cannot overwhelm the local system or remote endpoints.
"""
import time
import uuid

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


class SlidingWindowRateLimiter:
    """Per-key rate limiter using Redis sorted sets."""

    def __init__(self, redis: Redis, limit: int, window_seconds: float, prefix: str = "ratelimit:queue"):
        self.redis = redis
        self.limit = limit  # jobs per window
        self.window = window_seconds
        self.prefix = prefix

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def acquire(self, name: str) -> tuple[bool, float]:
        """
        Try to take one slot in the current window.

        Returns:
            (allowed: bool, retry_after: seconds until a slot frees up)
        """
        key = self._key(name)
        now = time.time()
        window_start = now - self.window

        try:
            # First, clean up old entries and count current entries
            pipe = self.redis.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            results = await pipe.execute()

            current = results[1]

            if current >= self.limit:
                oldest = await self.redis.zrange(key, 0, 0, withscores=True)
                if oldest:
                    retry_after = self.window - (now - oldest[0][1])
                else:
                    retry_after = self.window
                return False, max(retry_after, 0.01)

            await self.redis.zadd(key, {f"{now}:{uuid.uuid4().hex}": now})
            await self.redis.expire(key, max(int(self.window) + 1, 1))
            return True, 0.0

        except Exception as e:
            # If Redis is down, allow the job (fail open)
            logger.warning("rate_limiter_unavailable", key=key, error=str(e))
            return True, 0.0
