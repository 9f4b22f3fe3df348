"""
Pooled asyncio Redis client shared by every RedisStreamQueue in the process.
"""

import asyncio
import logging
import time
from typing import Optional

from redis.asyncio import Redis, ConnectionPool
from redis.exceptions import ConnectionError, TimeoutError
from redis.retry import Retry
from redis.backoff import ExponentialBackoff

import config
from errors import BackendUnavailable

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)


class RedisConnectionManager:
    """Manages Redis connection pool with health monitoring."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or config.REDIS_URL
        self.pool: Optional[ConnectionPool] = None
        self.client: Optional[Redis] = None
        self.health_task: Optional[asyncio.Task] = None
        self.is_healthy = True
        self.last_health_check = 0.0

    async def initialize(self) -> None:
        """Initialize Redis connection pool and verify it with a PING."""
        if self.pool is not None:
            return  # Already initialized

        pool_kwargs = {}
        if config.REDIS_RETRY_ATTEMPTS > 0:
            pool_kwargs["retry"] = Retry(
                backoff=ExponentialBackoff(),
                retries=config.REDIS_RETRY_ATTEMPTS,
                supported_errors=(ConnectionError, TimeoutError),
            )

        self.pool = ConnectionPool.from_url(
            self.url,
            max_connections=config.REDIS_MAX_CONNECTIONS,
            username=config.REDIS_USERNAME,
            password=config.REDIS_PASSWORD,
            socket_timeout=config.REDIS_SOCKET_TIMEOUT,
            socket_connect_timeout=config.REDIS_SOCKET_CONNECT_TIMEOUT,
            decode_responses=False,
            health_check_interval=config.REDIS_HEALTH_CHECK_INTERVAL,
            **pool_kwargs,
        )
        self.client = Redis(connection_pool=self.pool)

        try:
            await self.client.ping()
        except (ConnectionError, TimeoutError, OSError) as e:
            logger.error(f"Failed to initialize Redis connection pool at {self.url}: {e}")
            await self.close()
            raise BackendUnavailable(f"Redis is unreachable at {self.url}: {e}") from e

        logger.info(f"Redis connection pool initialized: {config.REDIS_MAX_CONNECTIONS} max connections")
        self.health_task = asyncio.create_task(self._health_monitor())

    async def get_client(self) -> Redis:
        """Get Redis client, initializing if necessary."""
        if self.client is None:
            await self.initialize()
        return self.client

    async def _health_monitor(self) -> None:
        """Monitor Redis connection health and log issues."""
        while True:
            await asyncio.sleep(config.REDIS_HEALTH_CHECK_INTERVAL)
            if not self.client:
                continue
            try:
                start_time = time.time()
                await self.client.ping()
                ping_time = (time.time() - start_time) * 1000  # ms

                if not self.is_healthy:
                    logger.info(f"Redis connection restored (ping: {ping_time:.1f}ms)")
                    self.is_healthy = True

                self.last_health_check = time.time()

                if ping_time > 100:
                    logger.warning(f"Slow Redis ping: {ping_time:.1f}ms")

            except (ConnectionError, TimeoutError, OSError) as e:
                if self.is_healthy:
                    logger.error(f"Redis health check failed: {e}")
                    self.is_healthy = False

    async def close(self) -> None:
        """Close Redis connections and cleanup."""
        if self.health_task:
            self.health_task.cancel()
            try:
                await self.health_task
            except asyncio.CancelledError:
                pass
            self.health_task = None

        if self.client:
            await self.client.aclose()
            self.client = None

        if self.pool:
            await self.pool.aclose()
            self.pool = None

        logger.info("Redis connection pool closed")


# Global Redis manager instance
_redis_manager = RedisConnectionManager()


async def get_redis() -> Redis:
    """Get the process-wide Redis client, connecting on first use."""
    return await _redis_manager.get_client()


async def init_redis() -> None:
    """Initialize Redis connection pool. Call this at startup."""
    await _redis_manager.initialize()


async def close_redis() -> None:
    """Close Redis connection pool. Call this at shutdown."""
    await _redis_manager.close()
