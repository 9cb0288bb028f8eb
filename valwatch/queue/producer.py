"""Job producer: the "add job" side of the queue API."""

from __future__ import annotations

import logging
from typing import Any, Optional

from redis.exceptions import RedisError

from valwatch.errors import QueueUnavailable
from valwatch.queue.registry import QueueRegistry
from valwatch.queue.types import JobOptions

logger = logging.getLogger(__name__)


class JobProducer:
    """Adds jobs to named queues borrowed from a registry.

    Recurring jobs must be added once per logical schedule. Re-adding the same
    schedule within one interval is a no-op at the broker, but callers should
    not rely on that to paper over redundant calls.
    """

    def __init__(self, registry: QueueRegistry):
        self._registry = registry

    async def add_job(
        self,
        queue_name: str,
        payload: Optional[dict[str, Any]] = None,
        options: Optional[JobOptions] = None,
    ) -> str:
        """Add a job to ``queue_name`` and return its id.

        Raises:
            QueueUnavailable: the broker could not be reached after the
                client's own retries
        """
        try:
            queue = await self._registry.get_or_create_queue(queue_name)
            job_id = await queue.add(payload, options)
        except RedisError as e:
            raise QueueUnavailable(queue_name, e) from e

        if options is not None and options.repeat_every is not None:
            logger.info(f"Scheduled {queue_name} every {options.repeat_every.total_seconds():.0f}s")
        else:
            logger.debug(f"Added job {job_id} to {queue_name}")
        return job_id
