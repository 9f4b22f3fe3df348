"""
Shared fixtures: src/ on sys.path, short timings, and an in-memory stand-in for
the asyncio Redis client (LIST + EXPIRE + MULTI pipeline + Pub/Sub) so the
shared backend can be exercised without a server.
"""

import asyncio
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

import config  # noqa: E402
import stream_queue  # noqa: E402
from memory_queue import MemoryQueueFactory  # noqa: E402
from redis_queue import RedisQueueFactory  # noqa: E402
from stream_queue import StreamQueueManager  # noqa: E402

from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

GRACE_DELAY = 0.05
REMOVE_DELAY = 0.05


class FakePubSub:
    def __init__(self, server: "FakeRedis"):
        self.server = server
        self.channels: List[str] = []
        self._messages: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()
        self.closed = False
        self.connected = False

    async def subscribe(self, *channels: str) -> None:
        self.server._check()
        if not self.connected:
            self.server._connect()
            self.connected = True
        for channel in channels:
            self.channels.append(channel)
            self.server.subscribers.setdefault(channel, []).append(self)
            self._messages.put_nowait({"type": "subscribe", "channel": channel.encode(), "data": len(self.channels)})

    async def unsubscribe(self, *channels: str) -> None:
        for channel in channels or list(self.channels):
            if channel in self.channels:
                self.channels.remove(channel)
            subs = self.server.subscribers.get(channel, [])
            if self in subs:
                subs.remove(self)

    async def get_message(self, ignore_subscribe_messages: bool = False, timeout: Optional[float] = 0.0):
        if self.server.fail_subscriptions:
            raise RedisConnectionError("connection reset by fake server")
        try:
            msg = await asyncio.wait_for(self._messages.get(), timeout=timeout or 0.001)
        except asyncio.TimeoutError:
            return None
        if msg.get("type") == "fail":
            raise RedisConnectionError("connection reset by fake server")
        if ignore_subscribe_messages and msg["type"] in ("subscribe", "unsubscribe"):
            return None
        return msg

    def deliver(self, channel: str, data: bytes) -> None:
        self._messages.put_nowait({"type": "message", "channel": channel.encode(), "data": data})

    def break_connection(self) -> None:
        self._messages.put_nowait({"type": "fail"})

    async def aclose(self) -> None:
        await self.unsubscribe()
        if self.connected:
            self.server.connections -= 1
            self.connected = False
        self.closed = True


class FakePipeline:
    def __init__(self, server: "FakeRedis"):
        self.server = server
        self.commands: List[tuple] = []

    def rpush(self, key: str, *values: bytes) -> "FakePipeline":
        self.commands.append(("rpush", key, values))
        return self

    def expire(self, key: str, seconds: int) -> "FakePipeline":
        self.commands.append(("expire", key, seconds))
        return self

    def publish(self, channel: str, data: bytes) -> "FakePipeline":
        self.commands.append(("publish", channel, data))
        return self

    async def execute(self) -> List[Any]:
        # All or nothing, like MULTI/EXEC
        self.server._check()
        results = []
        for name, *args in self.commands:
            if name == "rpush":
                results.append(self.server._rpush(args[0], *args[1]))
            elif name == "expire":
                results.append(self.server._expire(*args))
            elif name == "publish":
                results.append(self.server._publish(*args))
        self.commands = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the stream queues."""

    def __init__(self):
        self.lists: Dict[str, List[bytes]] = {}
        self.expiry: Dict[str, float] = {}
        self.subscribers: Dict[str, List[FakePubSub]] = {}
        self.published: List[tuple] = []
        self.now = 0.0
        self.fail = False
        self.fail_subscriptions = False
        self.connections = 0
        self.max_connections: Optional[int] = None

    # test controls
    def advance(self, seconds: float) -> None:
        self.now += seconds

    def subscriber_count(self, channel: str) -> int:
        return len(self.subscribers.get(channel, []))

    def _connect(self) -> None:
        if self.max_connections is not None and self.connections >= self.max_connections:
            raise RedisConnectionError("Too many connections")
        self.connections += 1

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Error 111 connecting to fake:6379. Connection refused.")

    def _alive(self, key: str) -> bool:
        deadline = self.expiry.get(key)
        if deadline is not None and deadline <= self.now:
            self.lists.pop(key, None)
            self.expiry.pop(key, None)
        return key in self.lists

    def _rpush(self, key: str, *values: bytes) -> int:
        self._alive(key)
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    def _expire(self, key: str, seconds: int) -> bool:
        if not self._alive(key):
            return False
        self.expiry[key] = self.now + seconds
        return True

    def _publish(self, channel: str, data: bytes) -> int:
        self.published.append((channel, data))
        subs = list(self.subscribers.get(channel, []))
        for pubsub in subs:
            pubsub.deliver(channel, data)
        return len(subs)

    # redis.asyncio.Redis surface
    async def ping(self) -> bool:
        self._check()
        return True

    async def rpush(self, key: str, *values: bytes) -> int:
        self._check()
        return self._rpush(key, *values)

    async def expire(self, key: str, seconds: int) -> bool:
        self._check()
        return self._expire(key, seconds)

    async def publish(self, channel: str, data: bytes) -> int:
        self._check()
        return self._publish(channel, data)

    async def lrange(self, key: str, start: int, end: int) -> List[bytes]:
        self._check()
        if not self._alive(key):
            return []
        items = self.lists[key]
        stop = None if end == -1 else end + 1
        return list(items[start:stop])

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self.lists.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    async def exists(self, *keys: str) -> int:
        self._check()
        return sum(1 for key in keys if self._alive(key))

    async def ttl(self, key: str) -> int:
        self._check()
        if not self._alive(key):
            return -2
        if key not in self.expiry:
            return -1
        return int(self.expiry[key] - self.now)

    async def copy(self, source: str, destination: str, replace: bool = False) -> bool:
        self._check()
        if not self._alive(source):
            return False
        if self._alive(destination) and not replace:
            return False
        self.lists[destination] = list(self.lists[source])
        self.expiry.pop(destination, None)
        return True

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def aclose(self) -> None:
        pass


@pytest.fixture(autouse=True)
def fast_timings(monkeypatch):
    monkeypatch.setattr(config, "STREAM_GRACE_DELAY", GRACE_DELAY)
    monkeypatch.setattr(config, "QUEUE_REMOVE_DELAY", REMOVE_DELAY)
    monkeypatch.setattr(stream_queue, "_queue_manager", None)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def memory_manager():
    return StreamQueueManager(MemoryQueueFactory(), default_compress_messages=True, default_ttl=300)


@pytest.fixture
def redis_manager(fake_redis):
    return StreamQueueManager(RedisQueueFactory(fake_redis), default_compress_messages=True, default_ttl=300)


async def collect(stream) -> list:
    """Drain a live-tail into a list."""
    items = []
    async for item in stream:
        items.append(item)
    return items


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll predicate() on the event loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
    # let the tail finish its backlog read after subscribing
    await asyncio.sleep(0.01)
