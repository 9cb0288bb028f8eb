"""Queue registry: the single owner of the broker connection."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from valwatch.queue.queue import DurableQueue
from valwatch.queue.types import Job

logger = logging.getLogger(__name__)

QueueFactory = Callable[[str, Redis, str], DurableQueue]


def _default_queue_factory(name: str, client: Redis, prefix: str) -> DurableQueue:
    return DurableQueue(name, client, prefix)


class QueueRegistry:
    """Maps queue names to queue handles bound to one shared Redis connection.

    A registry is constructed explicitly at startup and passed to every
    producer, processor and the health monitor.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "valwatch",
        client: Optional[Redis] = None,
        queue_factory: Optional[QueueFactory] = None,
    ):
        self._redis_url = redis_url
        self._prefix = prefix
        self._client = client
        self._queue_factory = queue_factory or _default_queue_factory
        self._lock = asyncio.Lock()
        self._queues: dict[str, DurableQueue] = {}
        self._last_completed_at: dict[str, float] = {}

    @property
    def client(self) -> Redis:
        """The shared broker connection, opened on first use."""
        if self._client is None:
            self._client = Redis.from_url(
                self._redis_url,
                decode_responses=True,
                retry=Retry(ExponentialBackoff(), 3),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
            )
            logger.info(f"Opened broker connection to {self._redis_url}")
        return self._client

    async def get_or_create_queue(self, name: str) -> DurableQueue:
        """Return the queue named ``name``, creating it on first reference.

        Concurrent calls for the same name return the same handle. Creation
        errors propagate to the caller.
        """
        async with self._lock:
            queue = self._queues.get(name)
            if queue is not None:
                return queue

            queue = self._queue_factory(name, self.client, self._prefix)
            await queue.empty()
            self._attach_observers(queue)
            self._queues[name] = queue
            logger.info(f"Created queue {name}")
            return queue

    def _attach_observers(self, queue: DurableQueue) -> None:
        name = queue.name

        def completed(job: Job, result: Any) -> None:
            self._last_completed_at[name] = time.time()
            logger.debug(f"Queue {name} completed job {job.id}")

        def failed(job: Job, error: BaseException) -> None:
            logger.error(f"Queue {name} job {job.id} failed after {job.attempts_made} attempt(s): {error}")

        def errored(error: BaseException) -> None:
            logger.error(f"Queue {name} error: {error}")

        queue.on_completed(completed)
        queue.on_failed(failed)
        queue.on_error(errored)

    def get_queue(self, name: str) -> Optional[DurableQueue]:
        return self._queues.get(name)

    def list_queues(self) -> list[DurableQueue]:
        return list(self._queues.values())

    def last_completed_at(self, name: str) -> Optional[float]:
        """Unix time of the last job the named queue completed, if any."""
        return self._last_completed_at.get(name)

    async def check_broker_connectivity(self) -> bool:
        """Ping the broker. Never raises."""
        try:
            return bool(await self.client.ping())
        except Exception as e:
            logger.warning(f"Broker ping failed: {e}")
            return False

    async def stop_listening(self) -> None:
        """Stop every queue's worker without closing the queues."""
        for queue in self.list_queues():
            try:
                await queue.stop()
            except Exception as e:
                logger.error(f"Failed to stop queue {queue.name}: {e}")

    async def close_all(self) -> bool:
        """Close every queue, then the broker connection.

        Failures are logged and do not stop the remaining closes.

        Returns:
            True if everything closed cleanly
        """
        clean = True
        for queue in self.list_queues():
            try:
                await queue.close()
            except Exception as e:
                clean = False
                logger.error(f"Failed to close queue {queue.name}: {e}")
        self._queues.clear()

        if self._client is not None:
            try:
                await self._client.aclose()
                logger.info("Closed broker connection")
            except Exception as e:
                clean = False
                logger.error(f"Failed to close broker connection: {e}")
            self._client = None
        return clean
