"""
AWOC — Redis Client
=====================
Pub/sub side channel for "events pending" signals.  Each subscriber
module listens on its own channel, ``<prefix>:events_pending:<module>``,
so a worker process only wakes for its own receipts.

Redis is optional: the runtime connects only when Redis signals are
enabled, and the receipt ledger stays the source of truth either way.

Usage:
    from awoc.core.redis import get_redis, RedisNamespace
    redis = await get_redis()
    await redis.publish(RedisNamespace.EVENTS_PENDING, "billing", payload)
"""

from __future__ import annotations

from enum import StrEnum

import redis.asyncio as aioredis

from awoc.core.config import get_settings
from awoc.core.logging import get_logger

logger = get_logger(__name__)


class RedisNamespace(StrEnum):
    EVENTS_PENDING = "events_pending"


class RedisClient:
    """``redis.asyncio`` client that scopes channel names by namespace."""

    def __init__(self, client: aioredis.Redis, prefix: str = "awoc") -> None:
        self._client = client
        self._prefix = prefix

    def channel(self, ns: RedisNamespace, name: str) -> str:
        """Full channel name a subscriber should listen on."""
        return f"{self._prefix}:{ns.value}:{name}"

    async def publish(
        self, ns: RedisNamespace, name: str, message: str | bytes
    ) -> int:
        """Publish and return how many listeners received the message."""
        return await self._client.publish(self.channel(ns, name), message)

    async def ping(self) -> bool:
        """``False`` instead of raising when Redis is unreachable."""
        try:
            return await self._client.ping()
        except aioredis.RedisError as exc:
            logger.warning("redis.ping_failed", error=str(exc))
            return False

    async def close(self) -> None:
        await self._client.aclose()


_redis_client: RedisClient | None = None


async def init_redis(url: str | None = None) -> RedisClient:
    """
    Connect the process-wide client.  ``url`` overrides ``AWOC_REDIS_URL``;
    channel names are prefixed with ``AWOC_APP_NAME``.
    """
    global _redis_client
    settings = get_settings()
    pool = aioredis.ConnectionPool.from_url(
        url or settings.redis_url,
        max_connections=settings.redis_max_connections,
    )
    _redis_client = RedisClient(
        aioredis.Redis(connection_pool=pool), prefix=settings.app_name
    )
    return _redis_client


async def get_redis() -> RedisClient:
    if _redis_client is None:
        raise RuntimeError("Redis client not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    global _redis_client
    if _redis_client is None:
        return
    await _redis_client.close()
    _redis_client = None
