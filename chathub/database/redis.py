# chathub/database/redis.py
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from chathub.core.config import settings

logger = logging.getLogger(__name__)

THROTTLE_PREFIX = "throttle"
RATE_LIMIT_PREFIX = "ratelimit"


class RedisManager:
    """
    Expiring key/value store shared by every server instance.

    Holds per-key "last action" markers with a TTL, so throttling decisions
    survive restarts and agree across instances.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url or settings.redis_url
        self.redis: Optional[redis.Redis] = None

    async def connect(self):
        client = redis.from_url(
            self.redis_url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )
        try:
            await client.ping()
        except RedisError as e:
            logger.error(f"Redis at {self.redis_url} is unreachable: {e}")
            await client.close()
            raise
        self.redis = client
        logger.info("Throttle store ready")

    async def disconnect(self):
        if self.redis is None:
            return
        await self.redis.close()
        self.redis = None
        logger.info("Throttle store closed")

    async def claim(self, key: str, ttl_seconds: int) -> bool:
        """
        Record an action for `key` unless one was recorded less than
        `ttl_seconds` ago. Returns True when the caller may proceed.
        """
        claimed = await self.redis.set(f"{THROTTLE_PREFIX}:{key}", "1", nx=True, ex=ttl_seconds)
        return bool(claimed)

    async def release(self, key: str):
        await self.redis.delete(f"{THROTTLE_PREFIX}:{key}")

    async def hit(self, key: str, window_seconds: int) -> int:
        """
        Count an action against a fixed window and return the number of
        actions seen in the current window.
        """
        counter = f"{RATE_LIMIT_PREFIX}:{key}"
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(counter, 0, ex=window_seconds, nx=True)
            pipe.incr(counter)
            _, count = await pipe.execute()
        return int(count)


redis_manager = RedisManager()
