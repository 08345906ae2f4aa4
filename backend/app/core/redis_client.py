"""
Redis client management.

Redis backs the route cache and, with the SQL datastore, the change feed.
The client is created on first use so the in-memory deployment and the
tests never connect.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Get the shared Redis client instance."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            decode_responses=settings.redis_decode_responses,
        )
    return _redis_client


async def ping_redis(client=None) -> bool:
    """
    Test the Redis connection.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        return bool(await (client or get_redis()).ping())
    except (RedisError, OSError) as exc:
        logger.warning("Redis ping failed", extra={"error": repr(exc)})
        return False


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
    _redis_client = None
