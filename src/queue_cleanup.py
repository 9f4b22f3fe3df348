"""
Queue Cleanup Manager - periodic eviction of expired queue handles
"""

import asyncio
import logging
from typing import List, Optional

import config
from errors import StreamQueueError
from stream_queue import StreamQueueManager, get_queue_manager

logger = logging.getLogger(__name__)


class QueueCleanupManager:
    """Deregisters queue handles whose queue has expired.

    Memory queues expire once idle for longer than their ttl (nothing else
    would ever free them). Redis queues expire once Redis dropped the key;
    removing the local handle makes get_queue() report QueueNotFound again.
    """

    def __init__(self, manager: StreamQueueManager, cleanup_interval: Optional[float] = None):
        """Initialize the cleanup manager.

        Args:
            manager: Registry whose handles are swept
            cleanup_interval: How often to run cleanup (seconds)
        """
        self.manager = manager
        self.cleanup_interval = config.QUEUE_CLEANUP_INTERVAL if cleanup_interval is None else cleanup_interval
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._cleanup_task is not None

    async def start(self):
        """Start the cleanup manager."""
        if self._cleanup_task is not None:
            return  # Already running

        self._stop_event.clear()
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(f"Queue cleanup manager started (every {self.cleanup_interval}s)")

    async def stop(self):
        """Stop the cleanup manager."""
        if self._cleanup_task is None:
            return

        self._stop_event.set()
        try:
            await asyncio.wait_for(self._cleanup_task, timeout=5.0)
        except asyncio.TimeoutError:
            self._cleanup_task.cancel()

        self._cleanup_task = None
        logger.info("Queue cleanup manager stopped")

    async def _cleanup_loop(self):
        """Main cleanup loop."""
        while not self._stop_event.is_set():
            try:
                await self.sweep()
            except StreamQueueError as e:
                logger.error(f"Error in cleanup loop: {e}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.cleanup_interval)
            except asyncio.TimeoutError:
                continue

    async def sweep(self) -> List[str]:
        """Run one pass; returns the ids whose handles were removed."""
        expired: List[str] = []
        queue_ids = self.manager.get_all_queue_ids()

        for queue_id in queue_ids:
            try:
                queue = await self.manager.get_queue(queue_id)
                if await queue.is_expired():
                    self.manager.remove_queue(queue_id)
                    expired.append(queue_id)
            except StreamQueueError as e:
                logger.debug(f"Error checking queue {queue_id}: {e}")

        if expired:
            logger.warning(f"🧹 Removed {len(expired)} expired queues: {', '.join(expired)}")
        else:
            logger.debug(f"✅ Queue cleanup: {len(queue_ids)} queues checked, none expired")
        return expired


# Global instance
_cleanup_manager: Optional[QueueCleanupManager] = None


async def get_cleanup_manager() -> QueueCleanupManager:
    """Get or create the global cleanup manager."""
    global _cleanup_manager
    if _cleanup_manager is None:
        _cleanup_manager = QueueCleanupManager(await get_queue_manager())
    return _cleanup_manager


async def start_cleanup_manager():
    """Start the global cleanup manager."""
    manager = await get_cleanup_manager()
    await manager.start()


async def stop_cleanup_manager():
    """Stop the global cleanup manager."""
    global _cleanup_manager
    if _cleanup_manager:
        await _cleanup_manager.stop()
        _cleanup_manager = None
