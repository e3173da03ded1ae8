"""
Shared Redis connection

Only the webhook idempotency store talks to Redis. When REDIS_URL is
empty, or the first PING fails, get_redis() answers None and webhook
dedupe stays process-local.
"""
import logging
from typing import Optional

import redis.asyncio as redis

from shipping_engine.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


async def _connect(url: str) -> Optional[redis.Redis]:
    client = redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=settings.http_timeout_seconds,
    )
    try:
        await client.ping()
    except (redis.RedisError, OSError) as e:
        logger.warning(f"Redis unavailable for webhook dedupe ({e}); using in-process store")
        await client.aclose()
        return None
    logger.info("Redis connected for webhook dedupe")
    return client


async def get_redis() -> Optional[redis.Redis]:
    """Lazily connect; a failed connect is retried on the next call."""
    global _redis_client

    if not settings.REDIS_URL:
        return None
    if _redis_client is None:
        _redis_client = await _connect(settings.REDIS_URL)
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
