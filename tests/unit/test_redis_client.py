from unittest.mock import AsyncMock, MagicMock

import pytest
import redis.asyncio as redis

from studymate.services.infrastructure.redis_client import RedisClient


def _client(mock: MagicMock) -> RedisClient:
    client = RedisClient("redis://localhost:6379/0")
    client.client = mock
    client._initialized = True
    return client


@pytest.mark.asyncio
async def test_set_with_ttl_uses_setex():
    mock = MagicMock()
    mock.setex = AsyncMock(return_value=True)
    client = _client(mock)

    assert await client.set_with_ttl("k", "v", 60) is True
    mock.setex.assert_awaited_once_with("k", 60, "v")


@pytest.mark.asyncio
async def test_operations_degrade_when_redis_errors():
    error = redis.ConnectionError("down")
    mock = MagicMock()
    mock.ping = AsyncMock(side_effect=error)
    mock.get = AsyncMock(side_effect=error)
    mock.mget = AsyncMock(side_effect=error)
    mock.setex = AsyncMock(side_effect=error)
    mock.delete = AsyncMock(side_effect=error)
    mock.info = AsyncMock(side_effect=error)
    client = _client(mock)

    assert await client.ping() is False
    assert await client.get("k") is None
    assert await client.mget(["a", "b"]) == [None, None]
    assert await client.set_with_ttl("k", "v", 10) is False
    assert await client.delete("k") is False
    assert await client.delete_many(["a", "b"]) == 0
    assert await client.info("stats") == {}


@pytest.mark.asyncio
async def test_ttl_without_expiry_is_none():
    mock = MagicMock()
    mock.ttl = AsyncMock(side_effect=[-1, 42])
    client = _client(mock)

    assert await client.ttl("k") is None
    assert await client.ttl("k") == 42


@pytest.mark.asyncio
async def test_scan_keys_collects_all_pages():
    async def scan_iter(match=None, count=None):
        for key in ("p:1", "p:2"):
            yield key

    mock = MagicMock()
    mock.scan_iter = scan_iter
    client = _client(mock)

    assert await client.scan_keys("p:*") == ["p:1", "p:2"]


@pytest.mark.asyncio
async def test_uninitialized_client_reports_unhealthy(monkeypatch):
    client = RedisClient("redis://localhost:6379/0")
    monkeypatch.setattr(client, "initialize", AsyncMock(side_effect=RuntimeError("no redis")))

    assert await client.ping() is False
    assert await client.get("k") is None
