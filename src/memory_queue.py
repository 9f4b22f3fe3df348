"""
In-process stream queue.

The log is a Python list owned by one queue object; notifications are plain
synchronous callbacks, so a push is visible to every local live-tail before
push() returns. Nothing outside this process can see it. There is no timer
enforcing ttl here: is_expired() reports idleness and queue_cleanup drops
idle handles from the manager.
"""

import copy
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional, Union

from event_message import CancelEvent, EventMessage, decode, encode
from stream_queue import DEFAULT_CANCEL_REASON, CancelSignal, FailureCallback, ItemCallback, live_tail

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)

StoredItem = Union[bytes, EventMessage]


class MemoryStreamQueue:
    """Stream queue kept in local memory. Entries are codec bytes when compress_messages is set."""

    def __init__(self, queue_id: str, compress_messages: bool = True, ttl: int = 300):
        self.id = queue_id
        self.compress_messages = compress_messages
        self.ttl = ttl
        self.cancel_signal = CancelSignal()
        self._data: List[StoredItem] = []
        self._listeners: List[ItemCallback] = []
        self.last_activity = time.monotonic()

    def _store(self, item: EventMessage) -> StoredItem:
        return encode(item) if self.compress_messages else item

    def _load(self, stored: StoredItem) -> EventMessage:
        return decode(stored) if self.compress_messages else stored

    async def push(self, item: EventMessage) -> None:
        # Encode before touching the list so a failing payload leaves no partial entry
        stored = self._store(item)
        self._data.append(stored)
        self.last_activity = time.monotonic()
        # One copy per listener: consumers must not see each other's payload edits
        for listener in list(self._listeners):
            listener(self._load(stored) if self.compress_messages else copy.deepcopy(item))

    async def get_all(self) -> List[EventMessage]:
        return [self._load(stored) for stored in self._data]

    async def clear(self) -> None:
        self._data = []

    async def cancel(self) -> None:
        # Stop local waiters first, then leave the marker for everyone else
        if self.cancel_signal.set(DEFAULT_CANCEL_REASON):
            logger.info(f"[{self.id}] memory queue cancelled")
        await self.push(CancelEvent(self.cancel_signal.reason or DEFAULT_CANCEL_REASON))

    async def copy_to_queue(self, to_id: str, ttl: Optional[int] = None) -> "MemoryStreamQueue":
        queue = MemoryStreamQueue(to_id, self.compress_messages, self.ttl if ttl is None else ttl)
        queue._data = list(self._data)
        return queue

    @asynccontextmanager
    async def _attach(self, on_item: ItemCallback, on_failure: FailureCallback):
        self._listeners.append(on_item)
        try:
            yield
        finally:
            try:
                self._listeners.remove(on_item)
            except ValueError:
                pass

    def on_data_receive(self) -> AsyncIterator[EventMessage]:
        return live_tail(self, self._attach)

    async def is_expired(self) -> bool:
        return time.monotonic() - self.last_activity > self.ttl

    @property
    def subscriber_count(self) -> int:
        return len(self._listeners)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"MemoryStreamQueue(id={self.id!r}, items={len(self._data)}, cancelled={self.cancel_signal.is_set})"


class MemoryQueueFactory:
    """Builds MemoryStreamQueue handles. Memory queues exist only through the manager's registry."""

    name = "memory"

    def create(self, queue_id: str, compress_messages: bool, ttl: int) -> MemoryStreamQueue:
        return MemoryStreamQueue(queue_id, compress_messages, ttl)

    async def exists(self, queue_id: str) -> bool:
        return False
