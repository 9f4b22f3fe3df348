"""
================================================================================
Stream queues: ordered, TTL-bounded, multi-consumer event logs keyed by run id.
================================================================================

A producer appends EventMessages for one workflow run; any number of consumers
either snapshot the log (get_all) or live-tail it (on_data_receive). Two
backends implement the same capability set:

  * memory_queue.MemoryStreamQueue - in-process list, visible to one process.
  * redis_queue.RedisStreamQueue   - Redis LIST + Pub/Sub channel, visible to
                                     every process that shares the Redis server.

The backend is chosen once, by the QueueFactory handed to StreamQueueManager.

--------------------------------------------------------------------------------
LIVE-TAIL PROTOCOL (live_tail)
--------------------------------------------------------------------------------
1) Cancelled already -> nothing is yielded.
2) Subscribe to new-item notifications, then read the backlog once. A backlog
   that already holds a control event means the run is over: the grace timer
   starts at once, so notifications already in flight are still yielded (a
   cancel marker also raises the local cancellation signal).
3) Notifications are appended to a local buffer by a synchronous callback, so
   nothing is lost while the consumer is busy with a previous batch.
4) Buffer non-empty -> yield everything in arrival order. Empty -> suspend until
   an item arrives or the cancellation signal fires.
5) A control event (end/error/cancel) schedules termination after the grace
   delay so trailing in-flight items still get through. A cancel event also
   triggers queue.cancel() so every sibling consumer stops.
6) Unsubscribe and detach the cancel listener on every exit path. Callers that
   may stop early should wrap the iterator in contextlib.aclosing().

--------------------------------------------------------------------------------
CANCELLATION
--------------------------------------------------------------------------------
cancel() = raise the in-process CancelSignal (local tails stop right away) +
push a __stream_cancel__ marker (remote tails and late joiners see it). A tail
that receives the marker re-triggers cancel() only if its own signal is still
down, so each handle re-publishes at most once.
"""

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Set, runtime_checkable

import config
from errors import QueueNotFound
from event_message import EventMessage
from util import build_consumer_id

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

DEFAULT_CANCEL_REASON = "user cancel this run"

# -------------------------- Cancellation signal --------------------------


class CancelSignal:
    """Single-fire broadcast flag: observable boolean plus notify-on-set."""

    def __init__(self) -> None:
        self._is_set = False
        self.reason: Optional[str] = None
        self._listeners: List[Callable[[], None]] = []

    @property
    def is_set(self) -> bool:
        return self._is_set

    def set(self, reason: str = DEFAULT_CANCEL_REASON) -> bool:
        """Raise the flag. Returns False if it was already raised."""
        if self._is_set:
            return False
        self._is_set = True
        self.reason = reason
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.error(f"Cancel listener {listener!r} failed: {e}")
        return True

    def add_listener(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[], None]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def __bool__(self) -> bool:
        return self._is_set

    def __repr__(self) -> str:
        return f"CancelSignal(is_set={self._is_set}, reason={self.reason!r})"


# -------------------------- Capability sets --------------------------


@runtime_checkable
class StreamQueue(Protocol):
    """What every backend offers. Both backends are plain classes satisfying this."""

    id: str
    compress_messages: bool
    ttl: int
    cancel_signal: CancelSignal

    async def push(self, item: EventMessage) -> None: ...

    async def get_all(self) -> List[EventMessage]: ...

    async def clear(self) -> None: ...

    async def cancel(self) -> None: ...

    async def copy_to_queue(self, to_id: str, ttl: Optional[int] = None) -> "StreamQueue": ...

    def on_data_receive(self) -> AsyncIterator[EventMessage]: ...

    async def is_expired(self) -> bool: ...


@runtime_checkable
class QueueFactory(Protocol):
    """Builds queues of one backend kind and answers existence checks for it."""

    name: str

    def create(self, queue_id: str, compress_messages: bool, ttl: int) -> StreamQueue: ...

    async def exists(self, queue_id: str) -> bool: ...


# ItemCallback receives each new EventMessage; FailureCallback receives the error
# that broke the subscription (decode failure, lost connection).
ItemCallback = Callable[[EventMessage], None]
FailureCallback = Callable[[BaseException], None]
Attach = Callable[[ItemCallback, FailureCallback], AbstractAsyncContextManager]

# -------------------------- Background tasks --------------------------

_background_tasks: Set[asyncio.Task] = set()


def _on_background_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


def spawn(coro: Any, name: Optional[str] = None) -> asyncio.Task:
    """Fire-and-forget a coroutine; keeps a reference and logs its failure."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_on_background_done)
    return task


# -------------------------- Live tail --------------------------


class _TailState:
    __slots__ = ("buffer", "wakeup", "ended", "failure", "end_timer", "terminal")

    def __init__(self) -> None:
        self.buffer: List[EventMessage] = []
        self.wakeup = asyncio.Event()
        self.ended = False
        self.failure: Optional[BaseException] = None
        self.end_timer: Optional[asyncio.TimerHandle] = None
        self.terminal: Optional[str] = None


async def live_tail(
    queue: StreamQueue,
    attach: Attach,
    grace_delay: Optional[float] = None,
) -> AsyncIterator[EventMessage]:
    """Shared live-tail loop; `attach` supplies the backend's notification source."""
    signal = queue.cancel_signal
    if signal.is_set:
        logger.debug(f"[{queue.id}] live-tail requested on cancelled queue, nothing to yield")
        return

    if grace_delay is None:
        grace_delay = config.STREAM_GRACE_DELAY
    loop = asyncio.get_running_loop()
    consumer_id = build_consumer_id()
    state = _TailState()

    def finish() -> None:
        state.ended = True
        state.wakeup.set()

    def on_item(item: EventMessage) -> None:
        state.buffer.append(item)
        if item.is_control and state.end_timer is None:
            state.terminal = item.event
            logger.debug(f"[{queue.id}] {consumer_id} got {item.event}, ending in {grace_delay}s")
            state.end_timer = loop.call_later(grace_delay, finish)
        if item.is_cancel and not signal.is_set:
            reason = item.payload.get("reason") if isinstance(item.payload, dict) else None
            signal.set(reason or DEFAULT_CANCEL_REASON)
            spawn(queue.cancel(), name=f"cancel:{queue.id}")
        state.wakeup.set()

    def on_failure(exc: BaseException) -> None:
        if state.failure is None:
            state.failure = exc
        state.wakeup.set()

    def on_cancel() -> None:
        state.wakeup.set()

    signal.add_listener(on_cancel)
    yielded = 0
    try:
        async with attach(on_item, on_failure):
            logger.debug(f"[{queue.id}] live-tail {consumer_id} attached")

            # Subscribed first, backlog second: a run that finished before we
            # attached is visible here even though its publish is long gone.
            # Notifications published after subscribe may still be in flight,
            # so a backlog terminal event arms the grace timer instead of
            # returning; whatever arrives meanwhile is still yielded.
            history = await queue.get_all()
            terminal = next((m for m in reversed(history) if m.is_control), None)
            if terminal is not None and state.end_timer is None:
                state.terminal = terminal.event
                if any(m.is_cancel for m in history):
                    signal.set(DEFAULT_CANCEL_REASON)
                logger.debug(f"[{queue.id}] live-tail {consumer_id}: backlog already ended with {terminal.event}")
                state.end_timer = loop.call_later(grace_delay, finish)

            while True:
                if state.failure is not None:
                    raise state.failure
                if signal.is_set:
                    break
                if state.buffer:
                    batch = state.buffer
                    state.buffer = []
                    for item in batch:
                        if signal.is_set:
                            break
                        yield item
                        yielded += 1
                    continue
                if state.ended:
                    break
                state.wakeup.clear()
                await state.wakeup.wait()
    finally:
        signal.remove_listener(on_cancel)
        if state.end_timer is not None:
            state.end_timer.cancel()
        reason = "cancelled" if signal.is_set else (state.terminal or "stopped")
        logger.debug(f"[{queue.id}] live-tail {consumer_id} detached ({reason}, {yielded} items)")


# -------------------------- Manager --------------------------


class StreamQueueManager:
    """
    Process-local registry: run id -> queue handle.

    Only this process's handles are tracked; a Redis server may hold queues this
    process never attached to. All mutation happens on the event loop thread, so
    the dict needs no lock.
    """

    def __init__(
        self,
        factory: QueueFactory,
        default_compress_messages: Optional[bool] = None,
        default_ttl: Optional[int] = None,
        remove_delay: Optional[float] = None,
    ):
        self.factory = factory
        self.default_compress_messages = (
            config.STREAM_QUEUE_COMPRESS if default_compress_messages is None else default_compress_messages
        )
        self.default_ttl = config.STREAM_QUEUE_TTL if default_ttl is None else default_ttl
        self.remove_delay = config.QUEUE_REMOVE_DELAY if remove_delay is None else remove_delay
        self._queues: Dict[str, StreamQueue] = {}
        self._pending_removals: Dict[str, asyncio.TimerHandle] = {}

    def create_queue(self, queue_id: str, ttl: Optional[int] = None) -> StreamQueue:
        """Create and register a fresh handle, replacing any local one for this id."""
        queue = self.factory.create(
            queue_id,
            self.default_compress_messages,
            self.default_ttl if ttl is None else ttl,
        )
        self._queues[queue_id] = queue
        logger.info(f"Created {self.factory.name} queue '{queue_id}' (ttl={queue.ttl}s)")
        return queue

    async def get_queue(self, queue_id: str) -> StreamQueue:
        queue = self._queues.get(queue_id)
        if queue is not None:
            return queue
        if await self.factory.exists(queue_id):
            logger.debug(f"Attaching local handle to existing {self.factory.name} queue '{queue_id}'")
            return self.create_queue(queue_id)
        raise QueueNotFound(queue_id)

    def has_queue(self, queue_id: str) -> bool:
        return queue_id in self._queues

    async def cancel_queue(self, queue_id: str) -> None:
        queue = await self.get_queue(queue_id)
        logger.info(f"Cancelling queue '{queue_id}'")
        await queue.cancel()
        self.remove_queue(queue_id)

    async def push_to_queue(self, queue_id: str, item: EventMessage) -> None:
        queue = await self.get_queue(queue_id)
        await queue.push(item)

    async def get_queue_data(self, queue_id: str) -> List[EventMessage]:
        queue = await self.get_queue(queue_id)
        return await queue.get_all()

    async def clear_queue(self, queue_id: str) -> None:
        queue = await self.get_queue(queue_id)
        await queue.clear()

    def remove_queue(self, queue_id: str) -> None:
        """Deregister the handle after remove_delay, unless it was replaced meanwhile."""
        queue = self._queues.get(queue_id)
        if queue is None:
            return

        def _remove() -> None:
            self._pending_removals.pop(queue_id, None)
            if self._queues.get(queue_id) is queue:
                del self._queues[queue_id]
                logger.debug(f"Removed queue '{queue_id}' from registry")

        previous = self._pending_removals.pop(queue_id, None)
        if previous is not None:
            previous.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _remove()
            return
        self._pending_removals[queue_id] = loop.call_later(self.remove_delay, _remove)

    async def copy_queue(self, from_id: str, to_id: str, ttl: Optional[int] = None) -> StreamQueue:
        source = await self.get_queue(from_id)
        queue = await source.copy_to_queue(to_id, ttl)
        self._queues[to_id] = queue
        logger.info(f"Copied queue '{from_id}' -> '{to_id}' (ttl={queue.ttl}s)")
        return queue

    def get_all_queue_ids(self) -> List[str]:
        return list(self._queues.keys())

    async def get_all_queues_data(self) -> Dict[str, List[EventMessage]]:
        result: Dict[str, List[EventMessage]] = {}
        for queue_id, queue in list(self._queues.items()):
            result[queue_id] = await queue.get_all()
        return result

    async def clear_all_queues(self) -> None:
        for queue in list(self._queues.values()):
            await queue.clear()

    async def close(self) -> None:
        """Drop pending removals and forget every handle (does not touch stored data)."""
        for handle in self._pending_removals.values():
            handle.cancel()
        self._pending_removals.clear()
        self._queues.clear()

    def __len__(self) -> int:
        return len(self._queues)

    def __contains__(self, queue_id: object) -> bool:
        return queue_id in self._queues


# -------------------------- Process-wide manager --------------------------

_queue_manager: Optional[StreamQueueManager] = None


async def get_queue_manager() -> StreamQueueManager:
    """Get the global queue manager, built for config.STREAM_QUEUE_BACKEND."""
    global _queue_manager
    if _queue_manager is None:
        backend = config.STREAM_QUEUE_BACKEND
        if backend == "redis":
            from redis_client import get_redis
            from redis_queue import RedisQueueFactory
            factory: QueueFactory = RedisQueueFactory(await get_redis())
        elif backend == "memory":
            from memory_queue import MemoryQueueFactory
            factory = MemoryQueueFactory()
        else:
            raise ValueError(f"Unknown STREAM_QUEUE_BACKEND '{backend}' (expected 'memory' or 'redis')")
        _queue_manager = StreamQueueManager(factory)
        logger.info(f"Stream queue manager initialized with {factory.name} backend")
    return _queue_manager


async def close_queue_manager() -> None:
    """Stop the sweeper, forget all handles, close the Redis pool if one was used."""
    global _queue_manager
    from queue_cleanup import stop_cleanup_manager
    await stop_cleanup_manager()
    if _queue_manager is None:
        return
    backend = _queue_manager.factory.name
    await _queue_manager.close()
    _queue_manager = None
    if backend == "redis":
        from redis_client import close_redis
        await close_redis()
    logger.info("Stream queue manager closed")
