"""
Rate Limiter Service using Redis sorted sets (sliding window).
"""
import time
import uuid

import redis.asyncio as redis
from redis.exceptions import RedisError
import structlog

from relay.config import settings

logger = structlog.get_logger()


class RateLimiter:
    """Sliding-window rate limiter keyed by an arbitrary string."""
    
    def __init__(self, redis_url: str = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis = None
    
    async def get_redis(self):
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url)
        return self._redis
    
    async def is_allowed(self, key: str, limit: int, window: int = 60) -> tuple[bool, int]:
        """
        Check if a request is allowed under `limit` requests per `window` seconds.
        
        Returns:
            (allowed: bool, retry_after: int)
        """
        r = await self.get_redis()
        key = f"ratelimit:{key}"
        now = time.time()
        window_start = now - window
        
        try:
            # First, clean up old entries and count current requests
            pipe = r.pipeline()
            pipe.zremrangebyscore(key, 0, window_start)
            pipe.zcard(key)
            results = await pipe.execute()
            
            request_count = results[1]
            
            if request_count >= limit:
                # Over limit - calculate retry_after
                oldest = await r.zrange(key, 0, 0, withscores=True)
                if oldest:
                    retry_after = int(window - (now - oldest[0][1]))
                else:
                    retry_after = window
                return False, max(retry_after, 1)
            
            # Under limit - add the request
            await r.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
            await r.expire(key, window)
            
            return True, 0
            
        except RedisError as e:
            logger.warning("rate_limiter_unavailable", error=str(e))
            # If Redis is down, allow the request (fail open)
            return True, 0
    
    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


# Singleton instance
rate_limiter = RateLimiter()
