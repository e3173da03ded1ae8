"""
Webhook idempotency stores

A key is *claimed* before any side effect runs. The first claim wins;
every later claim of the same key within the TTL returns False and the
caller must skip its side effects.
"""
import logging
import time
from typing import Dict, Optional

import redis.asyncio as redis

from shipping_engine.core.config import settings

logger = logging.getLogger(__name__)

WEBHOOK_KEY_PREFIX = "shipping:webhook:"


class InMemoryIdempotencyStore:
    """Process-local TTL set. Used when Redis is not configured."""

    def __init__(self, ttl_hours: Optional[int] = None):
        self.ttl_seconds = (ttl_hours or settings.WEBHOOK_IDEMPOTENCY_TTL_HOURS) * 3600
        self._keys: Dict[str, float] = {}

    def _purge(self, now: float) -> None:
        expired = [k for k, exp in self._keys.items() if exp <= now]
        for k in expired:
            del self._keys[k]

    async def claim(self, key: str) -> bool:
        now = time.monotonic()
        self._purge(now)
        if key in self._keys:
            return False
        self._keys[key] = now + self.ttl_seconds
        return True


class RedisIdempotencyStore:
    """
    Cross-instance store backed by SET NX EX.

    If Redis errors mid-flight the claim is decided by a local fallback
    store, so a Redis outage degrades to per-process dedupe.
    """

    def __init__(self, client: redis.Redis, ttl_hours: Optional[int] = None):
        self.client = client
        self.ttl_seconds = (ttl_hours or settings.WEBHOOK_IDEMPOTENCY_TTL_HOURS) * 3600
        self._fallback = InMemoryIdempotencyStore(ttl_hours)

    async def claim(self, key: str) -> bool:
        try:
            created = await self.client.set(
                f"{WEBHOOK_KEY_PREFIX}{key}", "1", nx=True, ex=self.ttl_seconds
            )
            return bool(created)
        except redis.RedisError as e:
            logger.warning(f"Redis claim failed for webhook {key}: {e}")
            return await self._fallback.claim(key)


async def get_idempotency_store():
    """Redis-backed store when REDIS_URL is set and reachable, else in-memory."""
    from shipping_engine.core.redis_client import get_redis

    client = await get_redis()
    if client is None:
        return InMemoryIdempotencyStore()
    return RedisIdempotencyStore(client)
