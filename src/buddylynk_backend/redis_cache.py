"""
Redis client dependency injection.

The realtime layer talks to Redis for three things: pub/sub fan-out,
presence counters and cached unread counts.
"""

import os
import redis.asyncio as aioredis

# Get Redis configuration from environment
REDIS_HOST = os.environ.get('REDIS_HOST', 'localhost')
REDIS_PORT = int(os.environ.get('REDIS_PORT', '6379'))
REDIS_PASSWORD = os.environ.get('REDIS_PASSWORD', '')
REDIS_DB = int(os.environ.get('REDIS_DB', '0'))

_async_redis_client = aioredis.Redis(
    host=REDIS_HOST,
    port=REDIS_PORT,
    password=REDIS_PASSWORD if REDIS_PASSWORD else None,
    db=REDIS_DB,
    decode_responses=True,
    socket_connect_timeout=5,
    socket_timeout=5,
    retry_on_timeout=True,
)


async def get_redis_client() -> aioredis.Redis:
    """
    Get async Redis client for direct access.

    Returns:
        Async Redis client instance

    Example:
        >>> redis = await get_redis_client()
        >>> await redis.incr("ws:online:42:server-1")
    """
    return _async_redis_client


async def close_redis_client() -> None:
    """Close the shared connection pool on shutdown."""
    await _async_redis_client.aclose()
