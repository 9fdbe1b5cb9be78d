"""Redis Client Management"""
from typing import Optional

import redis.asyncio as redis
import structlog

from streamline.config import get_settings

logger = structlog.get_logger(__name__)

# Global Redis client
redis_client: Optional[redis.Redis] = None


async def init_redis(url: Optional[str] = None) -> redis.Redis:
    """Initialize the shared Redis connection pool"""
    global redis_client

    settings = get_settings()
    url = url or settings.redis_url
    try:
        pool = redis.ConnectionPool.from_url(
            url,
            max_connections=settings.redis_max_connections,
            decode_responses=True,
        )
        redis_client = redis.Redis(connection_pool=pool)
        await redis_client.ping()
        logger.info("Redis connected", url=url)
    except redis.RedisError as e:
        logger.error("Failed to connect to Redis", url=url, error=str(e))
        raise
    return redis_client


async def close_redis() -> None:
    """Close Redis connection"""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis connection closed")


def set_redis(client: Optional[redis.Redis]) -> None:
    """Install an already-built client, e.g. a fakeredis instance in tests"""
    global redis_client
    redis_client = client


def get_redis() -> redis.Redis:
    """Get Redis client"""
    if not redis_client:
        raise RuntimeError("Redis not initialized")
    return redis_client
