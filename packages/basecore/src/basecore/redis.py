"""
Redis client utilities for basecore.

Provides lazy-initialized Redis client to avoid import-time connections.
"""

import functools
import logging

import redis

from basecore.settings import get_settings

logger = logging.getLogger(__name__)


@functools.lru_cache()
def get_redis_client() -> redis.Redis:
    """
    Get Redis client (cached).

    This function lazily initializes the Redis client to avoid import-time connections.
    """
    url = get_settings().REDIS_URL
    return redis.from_url(url, decode_responses=True)


def check_redis(client: redis.Redis) -> bool:
    """Return True if Redis answers PING."""
    try:
        return bool(client.ping())
    except redis.RedisError as e:
        logger.warning(f"Redis health check failed: {e}")
        return False
