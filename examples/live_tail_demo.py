#!/usr/bin/env python3
"""
Live-Tail Demonstration

A fake workflow streams tokens for one run while two consumers follow along:
one live-tails from the start, the other joins late and reads the snapshot.
A second run is cancelled mid-stream to show that every consumer stops.

Runs against the backend named by STREAM_QUEUE_BACKEND (memory by default):

    python examples/live_tail_demo.py
    STREAM_QUEUE_BACKEND=redis REDIS_URL=redis://localhost:6379/0 python examples/live_tail_demo.py
"""

import asyncio
import logging
import os
import sys

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from event_message import EndEvent, EventMessage
from stream_queue import close_queue_manager, get_queue_manager

logger = logging.getLogger(__name__)


async def produce(run_id: str, text: str, delay: float = 0.05) -> None:
    """Pretend to be an agent emitting one token per word."""
    manager = await get_queue_manager()
    for word in text.split():
        await manager.push_to_queue(run_id, EventMessage("token", word + " "))
        await asyncio.sleep(delay)
    await manager.push_to_queue(run_id, EndEvent({"words": len(text.split())}))


async def follow(name: str, run_id: str) -> None:
    manager = await get_queue_manager()
    queue = await manager.get_queue(run_id)
    parts = []
    async for message in queue.on_data_receive():
        if message.is_control:
            logger.info(f"[{name}] control event {message.event}: {message.payload}")
            continue
        parts.append(message.payload)
    logger.info(f"[{name}] stream finished: {''.join(parts)!r}")


async def demo_finished_run(manager) -> None:
    manager.create_queue("demo-run-1")
    consumer = asyncio.create_task(follow("live", "demo-run-1"))
    await asyncio.sleep(0.05)

    await produce("demo-run-1", "streams are ordered logs with a live tail")
    await consumer

    # A consumer that arrives after the end gets history from get_all() only
    history = await manager.get_queue_data("demo-run-1")
    logger.info(f"[late] snapshot has {len(history)} events, last is {history[-1].event}")
    await follow("late", "demo-run-1")


async def demo_cancelled_run(manager) -> None:
    manager.create_queue("demo-run-2")
    consumers = [asyncio.create_task(follow(f"tail-{i}", "demo-run-2")) for i in range(2)]
    producer = asyncio.create_task(produce("demo-run-2", "this run will never reach its end " * 5, delay=0.1))

    await asyncio.sleep(0.5)
    logger.info("Cancelling demo-run-2")
    await manager.cancel_queue("demo-run-2")
    await asyncio.gather(*consumers)

    producer.cancel()
    try:
        await producer
    except asyncio.CancelledError:
        pass


async def main() -> None:
    manager = await get_queue_manager()
    try:
        await demo_finished_run(manager)
        await demo_cancelled_run(manager)
        await manager.copy_queue("demo-run-1", "demo-run-1-archive", ttl=60)
        logger.info(f"Registered queues: {manager.get_all_queue_ids()}")
    finally:
        await close_queue_manager()


if __name__ == "__main__":
    asyncio.run(main())
