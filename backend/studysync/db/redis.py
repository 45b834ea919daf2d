# backend/studysync/db/redis.py
"""
Redis client lifecycle for the leaderboard cache.

Redis is optional: when REDIS_URL is unset or the server does not answer a
ping, `connect_to_redis` returns None and the caller falls back to the
in-process cache.
"""
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from studysync.core.config import settings
from studysync.core.logging import get_logger

logger = get_logger(__name__)

client: Optional[Redis] = None


async def connect_to_redis(url: Optional[str] = None) -> Optional[Redis]:
    global client
    url = url or settings.REDIS_URL
    if not url:
        logger.info("REDIS_URL not set, using in-process leaderboard cache")
        return None

    candidate = Redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    try:
        await candidate.ping()
    except (RedisError, OSError) as e:
        logger.warning(f"Failed to connect to Redis, using in-process cache: {e}")
        await candidate.aclose()
        return None

    client = candidate
    logger.info("Redis connection established")
    return client


async def close_redis_connection() -> None:
    global client
    if client is not None:
        await client.aclose()
        logger.info("Redis connection closed")
    client = None


def get_redis() -> Optional[Redis]:
    return client
