"""
RedisConnectionManager: pool construction, PING on startup, health monitor.

The pool is real (redis-py builds it lazily, nothing connects); the client on
top of it is a stub so no server is needed.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.retry import Retry

import config
import redis_client
from conftest import wait_until
from errors import BackendUnavailable
from redis_client import RedisConnectionManager, close_redis, get_redis, init_redis

URL = "redis://localhost:6399/0"


class StubClient:
    reachable = True

    def __init__(self, connection_pool=None):
        self.connection_pool = connection_pool
        self.pings = 0
        self.closed = False

    async def ping(self):
        self.pings += 1
        if not StubClient.reachable:
            raise RedisConnectionError("Error 111 connecting to localhost:6399. Connection refused.")
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def stub_client(monkeypatch):
    monkeypatch.setattr(redis_client, "Redis", StubClient)
    monkeypatch.setattr(StubClient, "reachable", True)


@pytest.mark.asyncio
async def test_unreachable_server_raises_backend_unavailable():
    StubClient.reachable = False
    manager = RedisConnectionManager(URL)

    with pytest.raises(BackendUnavailable):
        await manager.initialize()
    assert manager.client is None
    assert manager.pool is None
    assert manager.health_task is None


@pytest.mark.asyncio
@pytest.mark.parametrize("attempts", [0, 3])
async def test_retry_is_configured_only_when_requested(monkeypatch, attempts):
    monkeypatch.setattr(config, "REDIS_RETRY_ATTEMPTS", attempts)
    manager = RedisConnectionManager(URL)
    await manager.initialize()
    try:
        retry = manager.pool.connection_kwargs.get("retry")
        if attempts:
            assert isinstance(retry, Retry)
        else:
            assert retry is None
        assert manager.pool.max_connections == config.REDIS_MAX_CONNECTIONS
        assert manager.client.pings == 1
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_health_monitor_tracks_outages(monkeypatch):
    monkeypatch.setattr(config, "REDIS_HEALTH_CHECK_INTERVAL", 0.01)
    manager = RedisConnectionManager(URL)
    await manager.initialize()
    try:
        StubClient.reachable = False
        await wait_until(lambda: not manager.is_healthy)
        StubClient.reachable = True
        await wait_until(lambda: manager.is_healthy)
    finally:
        await manager.close()
    assert manager.health_task is None


@pytest.mark.asyncio
async def test_process_wide_client(monkeypatch):
    manager = RedisConnectionManager(URL)
    monkeypatch.setattr(redis_client, "_redis_manager", manager)

    await init_redis()
    client = await get_redis()
    assert client is manager.client
    assert await get_redis() is client

    await close_redis()
    assert client.closed
    assert manager.client is None
