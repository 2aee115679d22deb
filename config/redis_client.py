"""
Redis client configuration for the host lock store.

Usage:
    from config.redis_client import get_redis, redis_available

    if redis_available():
        client = get_redis()
        client.hsetnx("LOCK__web-001", "id__ip", "biz-web__10.0.0.1")
"""

import logging
from typing import Optional

import redis

from config.settings import RedisSettings, get_settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[redis.Redis] = None


def get_redis(settings: Optional[RedisSettings] = None) -> redis.Redis:
    """
    Get the Redis client instance.

    The client connects lazily; connection errors surface on the first
    command as redis.ConnectionError.

    Args:
        settings: Redis settings (default: get_settings().redis)

    Returns:
        redis.Redis: client with decode_responses enabled
    """
    global _redis_client

    if _redis_client is None:
        settings = settings or get_settings().redis
        _redis_client = redis.from_url(
            settings.connection_url,
            decode_responses=True,
            socket_timeout=settings.socket_timeout or None,
            socket_connect_timeout=settings.socket_timeout or None,
        )

    return _redis_client


def redis_available(client: Optional[redis.Redis] = None) -> bool:
    """
    Check if Redis is reachable right now.

    Unlike the lock operations, this never raises; it is meant for
    readiness checks only.
    """
    try:
        (client or get_redis()).ping()
        return True
    except redis.RedisError as e:
        logger.warning(f"Redis not available: {e}")
        return False


class LockKeys:
    """Key layout of the host lock store."""

    PREFIX = "LOCK__"
    OWNER_FIELD = "id__ip"

    @classmethod
    def host(cls, hostname: str) -> str:
        return f"{cls.PREFIX}{hostname}"
