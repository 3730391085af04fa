"""
Redis Client Tests
====================
Validates:
- Namespaced channel prefixing
- Health check degrades to False on Redis errors
- Module-level singleton lifecycle
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis.asyncio as aioredis

from awoc.core import redis as redis_mod
from awoc.core.redis import RedisClient, RedisNamespace


class TestRedisClient:
    async def test_publish_prefixes_channel(self, mock_redis_client):
        receivers = await mock_redis_client.publish(
            RedisNamespace.EVENTS_PENDING, "ledger", "{}"
        )
        assert receivers == 1
        mock_redis_client._client.publish.assert_awaited_once_with(
            "awoc:events_pending:ledger", "{}"
        )

    async def test_custom_prefix(self):
        inner = AsyncMock()
        client = RedisClient(inner, prefix="tenant_a")
        await client.publish(RedisNamespace.EVENTS_PENDING, "audit", b"x")
        inner.publish.assert_awaited_once_with("tenant_a:events_pending:audit", b"x")

    def test_channel_name(self, mock_redis_client):
        assert (
            mock_redis_client.channel(RedisNamespace.EVENTS_PENDING, "reports")
            == "awoc:events_pending:reports"
        )

    async def test_ping_ok(self, mock_redis_client):
        assert await mock_redis_client.ping() is True

    async def test_ping_failure(self):
        inner = AsyncMock()
        inner.ping = AsyncMock(side_effect=aioredis.ConnectionError("down"))
        assert await RedisClient(inner).ping() is False

    async def test_close(self, mock_redis_client):
        await mock_redis_client.close()
        mock_redis_client._client.aclose.assert_awaited_once()


class TestSingleton:
    async def test_get_before_init_raises(self):
        with patch.object(redis_mod, "_redis_client", None):
            with pytest.raises(RuntimeError):
                await redis_mod.get_redis()

    async def test_init_and_close(self, settings):
        fake_redis = MagicMock()
        fake_redis.aclose = AsyncMock()
        with patch.object(redis_mod.aioredis, "Redis", return_value=fake_redis), \
             patch.object(redis_mod.aioredis.ConnectionPool, "from_url") as from_url:
            client = await redis_mod.init_redis("redis://cache:6379/3")
            assert await redis_mod.get_redis() is client
            assert from_url.call_args.args[0] == "redis://cache:6379/3"

            await redis_mod.close_redis()
            fake_redis.aclose.assert_awaited_once()
        with pytest.raises(RuntimeError):
            await redis_mod.get_redis()
