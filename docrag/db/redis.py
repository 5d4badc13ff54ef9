"""
Redis connection management.

One process-wide client, created on first use by the pipeline cache
(CACHE_BACKEND=redis). Celery reaches Redis through its own broker and
result-backend URLs and does not share this client.
"""

import logging
from typing import Optional

from redis.asyncio import ConnectionPool, Redis

from docrag.core.config import settings

logger = logging.getLogger(__name__)

_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """
    Connect and ping.

    A failed ping leaves nothing behind, so the next call tries again.
    """
    global _redis_pool, _redis_client

    if _redis_client is not None:
        return _redis_client

    logger.info(f"Connecting to Redis (max_connections={settings.REDIS_MAX_CONNECTIONS})")
    pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
        socket_keepalive=True,
    )
    client = Redis(connection_pool=pool)

    try:
        await client.ping()
    except Exception as e:
        logger.error(f"Redis connection failed: {e}")
        await pool.disconnect()
        raise

    _redis_pool, _redis_client = pool, client
    return client


async def get_redis() -> Redis:
    return _redis_client if _redis_client is not None else await init_redis()


async def close_redis() -> None:
    """Close the client and its pool; called from the application shutdown."""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        logger.info("Closing Redis connection")
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None


# ========================================
# Health Check
# ========================================

async def check_redis_health() -> bool:
    """True when the cache backend answers a ping."""
    try:
        return await (await get_redis()).ping() is True
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return False
