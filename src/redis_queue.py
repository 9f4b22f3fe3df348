"""
Redis-backed stream queue, shared by every process connected to the same server.

Keys (prefixes come from config):
  queue:{run_id}    LIST of encoded EventMessages, oldest first, EXPIRE ttl on every push
  channel:{run_id}  Pub/Sub channel; every push publishes the same encoded bytes

A push is one MULTI/EXEC (RPUSH + EXPIRE + PUBLISH), so an entry is stored and
announced whole or not at all. Live-tails subscribe to the channel before they
look at the LIST, which closes the gap between an old publish and a new
subscriber for terminal events. A copy duplicates the LIST only; it never
mirrors the channel.

All live-tails created through one RedisQueueFactory share a single Pub/Sub
connection (ChannelSubscriber), so the number of concurrent consumers is not
bounded by the connection pool size.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager, contextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

from redis.asyncio import Redis
from redis.asyncio.client import PubSub
from redis.exceptions import ConnectionError, RedisError, TimeoutError

import config
from errors import BackendUnavailable, CorruptMessage
from event_message import CancelEvent, EventMessage, decode, encode
from stream_queue import DEFAULT_CANCEL_REASON, CancelSignal, FailureCallback, ItemCallback, live_tail

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

# Seconds a pubsub read blocks before the reader loops again
NOTIFY_POLL_TIMEOUT = 1.0

Listener = Tuple[ItemCallback, FailureCallback]


def queue_key(queue_id: str) -> str:
    """Redis LIST key holding the run's event log."""
    return f"{config.QUEUE_KEY_PREFIX}{queue_id}"


def channel_key(queue_id: str) -> str:
    """Pub/Sub channel announcing new entries of the run's event log."""
    return f"{config.CHANNEL_KEY_PREFIX}{queue_id}"


@contextmanager
def backend_call(queue_id: str, operation: str):
    """Translate Redis connectivity errors into BackendUnavailable. No retry here."""
    try:
        yield
    except (ConnectionError, TimeoutError, OSError) as e:
        logger.error(f"[{queue_id}] Redis {operation} failed: {e}")
        raise BackendUnavailable(f"Redis {operation} failed for queue '{queue_id}': {e}") from e


class ChannelSubscriber:
    """
    One Pub/Sub connection fanned out to many live-tails by channel.

    A channel is SUBSCRIBEd when its first listener arrives and UNSUBSCRIBEd
    when its last one leaves; the connection and its reader task exist only
    while somebody listens. A broken connection fails every listener at once
    and the next listener opens a fresh one.
    """

    def __init__(self, redis: Redis):
        self.redis = redis
        self._pubsub: Optional[PubSub] = None
        self._reader: Optional[asyncio.Task] = None
        self._listeners: Dict[str, List[Listener]] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    @property
    def listener_count(self) -> int:
        return sum(len(entries) for entries in self._listeners.values())

    @asynccontextmanager
    async def listen(self, channel: str, on_item: ItemCallback, on_failure: FailureCallback):
        """Deliver notifications of `channel` while the block runs; subscribed (confirmed) on entry."""
        entry = (on_item, on_failure)
        await self._add(channel, entry)
        try:
            yield
        finally:
            await self._discard(channel, entry)

    async def _add(self, channel: str, entry: Listener) -> None:
        async with self._lock:
            entries = self._listeners.get(channel)
            if entries:
                entries.append(entry)
                return
            self._listeners[channel] = [entry]
            try:
                with backend_call(channel, "subscribe"):
                    await self._subscribe(channel)
            except BaseException:
                self._forget(channel, entry)
                if not self._listeners:
                    await self._shutdown()
                raise

    async def _subscribe(self, channel: str) -> None:
        if self._pubsub is None:
            self._pubsub = self.redis.pubsub()
        confirmed = asyncio.get_running_loop().create_future()
        self._pending[channel] = confirmed
        try:
            await self._pubsub.subscribe(channel)
            if self._reader is None:
                self._reader = asyncio.create_task(self._read_loop(self._pubsub), name="redis-pubsub-reader")
            await asyncio.wait_for(confirmed, timeout=config.REDIS_SOCKET_TIMEOUT)
        except asyncio.TimeoutError:
            raise TimeoutError(f"no subscribe confirmation for {channel}") from None
        finally:
            self._pending.pop(channel, None)
        logger.debug(f"Subscribed to {channel} ({len(self._listeners)} channels on shared connection)")

    async def _discard(self, channel: str, entry: Listener) -> None:
        async with self._lock:
            if not self._forget(channel, entry) or channel in self._listeners:
                return
            if self._listeners:
                try:
                    await self._pubsub.unsubscribe(channel)
                except (RedisError, OSError) as e:
                    logger.debug(f"Error unsubscribing from {channel}: {e}")
                return
            await self._shutdown()

    def _forget(self, channel: str, entry: Listener) -> bool:
        entries = self._listeners.get(channel)
        if entries is None or entry not in entries:
            return False
        entries.remove(entry)
        if not entries:
            del self._listeners[channel]
        return True

    async def _shutdown(self) -> None:
        reader, pubsub = self._reader, self._pubsub
        self._reader = None
        self._pubsub = None
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if pubsub is not None:
            await self._close(pubsub)

    @staticmethod
    async def _close(pubsub: PubSub) -> None:
        try:
            await pubsub.aclose()
        except (RedisError, OSError) as e:
            logger.debug(f"Error closing pubsub: {e}")

    async def _read_loop(self, pubsub: PubSub) -> None:
        try:
            while True:
                msg = await pubsub.get_message(ignore_subscribe_messages=False, timeout=NOTIFY_POLL_TIMEOUT)
                if msg is not None:
                    self._dispatch(msg)
        except (RedisError, OSError) as e:
            logger.error(f"Redis subscription lost: {e}")
            failure: BaseException = BackendUnavailable(f"Redis subscription lost: {e}")
        except Exception as e:
            logger.error(f"Redis subscription reader failed: {e}")
            failure = e
        self._fail_all(pubsub, failure)
        await self._close(pubsub)

    def _dispatch(self, msg: dict) -> None:
        channel = msg.get("channel")
        if isinstance(channel, bytes):
            channel = channel.decode("utf-8", "replace")
        kind = msg.get("type")
        if kind == "subscribe":
            confirmed = self._pending.get(channel)
            if confirmed is not None and not confirmed.done():
                confirmed.set_result(None)
            return
        if kind != "message":
            return

        # Each listener decodes its own copy so payloads are never shared between consumers
        for on_item, on_failure in list(self._listeners.get(channel, ())):
            try:
                item = decode(msg["data"])
            except CorruptMessage as e:
                logger.error(f"Corrupt notification on {channel}: {e}")
                on_failure(e)
                continue
            on_item(item)

    def _fail_all(self, pubsub: PubSub, failure: BaseException) -> None:
        if pubsub is not self._pubsub:
            return
        listeners, pending = self._listeners, self._pending
        self._listeners = {}
        self._pending = {}
        self._pubsub = None
        self._reader = None
        for confirmed in pending.values():
            if not confirmed.done():
                confirmed.set_exception(failure)
        for entries in listeners.values():
            for _, on_failure in entries:
                on_failure(failure)


class RedisStreamQueue:
    """
    Stream queue stored in Redis.

    Entries are always codec bytes (Redis stores bytes); compress_messages is
    kept for interface parity with the memory backend and for copies.
    """

    def __init__(
        self,
        queue_id: str,
        compress_messages: bool = True,
        ttl: int = 300,
        *,
        redis: Redis,
        subscriber: Optional[ChannelSubscriber] = None,
    ):
        self.id = queue_id
        self.compress_messages = compress_messages
        self.ttl = ttl
        self.redis = redis
        self.subscriber = subscriber if subscriber is not None else ChannelSubscriber(redis)
        self.queue_key = queue_key(queue_id)
        self.channel_key = channel_key(queue_id)
        self.cancel_signal = CancelSignal()
        self.last_activity = time.monotonic()

    async def push(self, item: EventMessage) -> None:
        data = encode(item)
        with backend_call(self.id, "push"):
            pipe = self.redis.pipeline(transaction=True)
            pipe.rpush(self.queue_key, data)
            pipe.expire(self.queue_key, self.ttl)
            pipe.publish(self.channel_key, data)
            await pipe.execute()
        self.last_activity = time.monotonic()

    async def get_all(self) -> List[EventMessage]:
        with backend_call(self.id, "read"):
            data = await self.redis.lrange(self.queue_key, 0, -1)
        if not data:
            return []
        return [decode(entry) for entry in data]

    async def clear(self) -> None:
        with backend_call(self.id, "clear"):
            await self.redis.delete(self.queue_key)

    async def cancel(self) -> None:
        # Stop local waiters first, then publish the marker for other processes
        if self.cancel_signal.set(DEFAULT_CANCEL_REASON):
            logger.info(f"[{self.id}] redis queue cancelled")
        await self.push(CancelEvent(self.cancel_signal.reason or DEFAULT_CANCEL_REASON))

    async def copy_to_queue(self, to_id: str, ttl: Optional[int] = None) -> "RedisStreamQueue":
        queue = RedisStreamQueue(
            to_id,
            self.compress_messages,
            self.ttl if ttl is None else ttl,
            redis=self.redis,
            subscriber=self.subscriber,
        )
        with backend_call(self.id, "copy"):
            await self.redis.copy(self.queue_key, queue.queue_key, replace=True)
            await self.redis.expire(queue.queue_key, queue.ttl)
        return queue

    def _attach(self, on_item: ItemCallback, on_failure: FailureCallback):
        return self.subscriber.listen(self.channel_key, on_item, on_failure)

    def on_data_receive(self) -> AsyncIterator[EventMessage]:
        return live_tail(self, self._attach)

    async def exists(self) -> bool:
        with backend_call(self.id, "exists"):
            return await self.redis.exists(self.queue_key) > 0

    async def is_expired(self) -> bool:
        """Gone from Redis and idle locally for longer than ttl."""
        if time.monotonic() - self.last_activity <= self.ttl:
            return False
        return not await self.exists()

    def __repr__(self) -> str:
        return f"RedisStreamQueue(id={self.id!r}, key={self.queue_key!r}, cancelled={self.cancel_signal.is_set})"


class RedisQueueFactory:
    """Builds RedisStreamQueue handles over one shared client and one shared subscriber."""

    name = "redis"

    def __init__(self, redis: Redis):
        self.redis = redis
        self.subscriber = ChannelSubscriber(redis)

    def create(self, queue_id: str, compress_messages: bool, ttl: int) -> RedisStreamQueue:
        return RedisStreamQueue(queue_id, compress_messages, ttl, redis=self.redis, subscriber=self.subscriber)

    async def exists(self, queue_id: str) -> bool:
        with backend_call(queue_id, "exists"):
            return await self.redis.exists(queue_key(queue_id)) > 0
