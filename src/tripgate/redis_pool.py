"""Redis connection pool — shared by rate limiting and health checks.

Learn: Redis is optional. When it isn't configured or reachable the
pool stays None and everything that uses it degrades gracefully:
rate limiting is skipped and /health reports redis as "disabled".
"""

from typing import Optional

import redis.asyncio as aioredis

from tripgate.config import settings

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis(url: Optional[str] = None) -> aioredis.Redis:
    """Initialize the Redis connection pool and verify it answers."""
    global _redis
    client = aioredis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await client.ping()
    _redis = client
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def get_redis() -> Optional[aioredis.Redis]:
    """The shared connection, or None when Redis is unavailable."""
    return _redis
