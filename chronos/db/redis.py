"""
Redis connection management.

Provides the async Redis client used for:
- Search result caching and cache metrics
- Per-content-item pipeline locks
- Per-owner concurrency slots

The Celery broker connection is managed by Celery itself.
"""

from typing import Optional

from redis.asyncio import ConnectionPool, Redis

from chronos.core.config import Settings, settings as default_settings
from chronos.core.logging import get_logger

logger = get_logger(__name__)


def create_redis(cfg: Optional[Settings] = None) -> Redis:
    """
    Build an async Redis client with its own connection pool.

    The client is bound to the event loop it is first used in; build one per
    loop (API lifespan, Celery task run).
    """
    cfg = cfg or default_settings

    pool = ConnectionPool.from_url(
        cfg.REDIS_URL,
        decode_responses=True,  # Auto-decode bytes to strings
        max_connections=cfg.REDIS_MAX_CONNECTIONS,
        socket_connect_timeout=cfg.REDIS_SOCKET_TIMEOUT,
        socket_timeout=cfg.REDIS_SOCKET_TIMEOUT,
        socket_keepalive=True,
    )
    return Redis(connection_pool=pool)


async def close_redis(client: Optional[Redis]) -> None:
    """Close a client and disconnect its pool."""
    if client is None:
        return

    logger.info("redis_closing")
    try:
        await client.aclose()
        await client.connection_pool.disconnect()
    except Exception as e:
        logger.warning("redis_close_failed", error=str(e))


async def check_redis_health(client: Redis) -> bool:
    """
    Check if Redis is healthy and responsive.

    Returns:
        bool: True if Redis is healthy, False otherwise
    """
    try:
        response = await client.ping()
        return response is True
    except Exception as e:
        logger.error("redis_health_check_failed", error=str(e))
        return False
