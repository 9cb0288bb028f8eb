"""
Job processors - one named queue per concern.

Usage:
    from valwatch.jobs import JOB_DEFINITIONS, JobContext

    for definition in JOB_DEFINITIONS:
        queue = await registry.get_or_create_queue(definition.queue_name)
        queue.process(definition.bind(ctx))
        if definition.recurring:
            await definition.producer(ctx)
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from valwatch.jobs import balance, dispatcher, event_result, poll_vote, rpc_health, uptime, validator_sync
from valwatch.jobs.base import JobContext, add_recurring_job, notify_subscribers
from valwatch.queue import Job, JobHandler

Handler = Callable[[JobContext, Job], Awaitable[Any]]
Producer = Callable[[JobContext], Awaitable[str]]


@dataclass(frozen=True)
class JobDefinition:
    """A named queue, its handler and, for recurring jobs, the function that seeds its schedule."""

    queue_name: str
    handler: Handler
    producer: Optional[Producer] = None

    @property
    def recurring(self) -> bool:
        return self.producer is not None

    def bind(self, ctx: JobContext) -> JobHandler:
        return functools.partial(self.handler, ctx)


JOB_DEFINITIONS: list[JobDefinition] = [
    JobDefinition(dispatcher.QUEUE_NAME, dispatcher.handle, dispatcher.add_send_notifications_job),
    JobDefinition(validator_sync.QUEUE_NAME, validator_sync.handle, validator_sync.add_val_all_info_checker_job),
    JobDefinition(uptime.QUEUE_NAME, uptime.handle, uptime.add_val_uptime_checker_job),
    JobDefinition(poll_vote.QUEUE_NAME, poll_vote.handle, poll_vote.add_poll_vote_notification_job),
    JobDefinition(rpc_health.QUEUE_NAME, rpc_health.handle, rpc_health.add_rpc_endpoint_healthchecker_job),
    JobDefinition(balance.QUEUE_NAME, balance.handle, balance.add_broadcaster_balance_checker_job),
    JobDefinition(event_result.QUEUE_NAME, event_result.handle),
]

__all__ = [
    "JOB_DEFINITIONS",
    "JobContext",
    "JobDefinition",
    "add_recurring_job",
    "notify_subscribers",
]
