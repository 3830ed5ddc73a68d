"""Redis connection configuration."""

import redis.asyncio as redis

from mediaflow.core.config import settings


def create_redis_client(url: str = settings.REDIS_URL) -> redis.Redis:
    """Create a new Redis client.

    Args:
        url: Redis connection URL

    Returns:
        Redis client with string decoding enabled
    """
    return redis.from_url(url, decode_responses=True)
