"""Notification dispatcher: drains the outbox through the notifier.

One dispatch cycle:

1. Fetch unsent notifications below the retry cap, oldest first. A requeued
   retry job carries ``notification_id`` and targets only that record.
2. Deliver every record concurrently; one failure never aborts the others.
3. Mark successes as sent.
4. Requeue failures: bump ``retry_count`` and add a priority retry job while
   below ``MAX_RETRIES``, otherwise log and leave the record unsent.

Delivery and the ``sent`` commit are not atomic. A crash between the two
delivers the same notification again on the next cycle.

A scheduled cycle that raises gets three attempts in the queue, 2s and then
4s apart.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from valwatch.errors import NotifierError, SpecificError
from valwatch.jobs.base import JobContext, add_recurring_job
from valwatch.models import MAX_RETRIES, DeliveryOutcome, Notification
from valwatch.queue import Job, JobOptions
from valwatch.retry import RetryPolicy

logger = logging.getLogger(__name__)

QUEUE_NAME = "sendNotifications"

# Retries are served before fresh scheduled cycles
REQUEUE_PRIORITY = 10


@dataclass
class DispatchReport:
    """What one dispatch cycle did."""

    fetched: int = 0
    sent: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    exhausted: list[str] = field(default_factory=list)


class NotificationDispatcher:
    def __init__(self, store, notifier, producer, queue_name: str = QUEUE_NAME, max_retries: int = MAX_RETRIES):
        self._store = store
        self._notifier = notifier
        self._producer = producer
        self._queue_name = queue_name
        self._max_retries = max_retries

    async def run_cycle(self, notification_id: Optional[str] = None) -> DispatchReport:
        """Run one fetch, deliver, commit and requeue pass.

        Errors other than expected delivery failures are re-raised after every
        outcome of the cycle has been committed or requeued.
        """
        pending = await self._fetch(notification_id)
        report = DispatchReport(fetched=len(pending))
        if not pending:
            return report

        results = await asyncio.gather(
            *(self._notifier.send_notification(n) for n in pending),
            return_exceptions=True,
        )

        outcomes: list[DeliveryOutcome] = []
        unexpected: Optional[BaseException] = None
        for notification, result in zip(pending, results):
            outcome = self._to_outcome(notification, result)
            outcomes.append(outcome)
            if isinstance(outcome.error, Exception) and not isinstance(outcome.error, (SpecificError, NotifierError)):
                unexpected = unexpected or outcome.error

        for outcome in outcomes:
            if outcome.success:
                await self._store.mark_notification_sent(outcome.notification_id)
                report.sent.append(outcome.notification_id)

        for outcome in outcomes:
            if outcome.success:
                continue
            report.failed.append(outcome.notification_id)
            if await self._requeue(outcome.notification_id):
                report.requeued.append(outcome.notification_id)
            else:
                report.exhausted.append(outcome.notification_id)

        logger.info(
            f"Dispatch cycle: {len(report.sent)}/{report.fetched} sent, "
            f"{len(report.requeued)} requeued, {len(report.exhausted)} exhausted"
        )
        if unexpected is not None:
            raise unexpected
        return report

    async def _fetch(self, notification_id: Optional[str]) -> list[Notification]:
        if notification_id is None:
            return await self._store.find_notifications(sent=False, max_retry_count=self._max_retries)

        notification = await self._store.find_notification(notification_id)
        if notification is None or notification.sent:
            logger.debug(f"Retry job for {notification_id} has nothing to deliver")
            return []
        return [notification]

    def _to_outcome(self, notification: Notification, result) -> DeliveryOutcome:
        nid = notification.notification_id
        if isinstance(result, SpecificError):
            logger.warning(f"Notification {nid} not deliverable: {result}")
            return DeliveryOutcome(nid, False, result)
        if isinstance(result, NotifierError):
            logger.error(f"Notification {nid} delivery failed: {result}")
            return DeliveryOutcome(nid, False, result)
        if isinstance(result, BaseException):
            logger.error(f"Notification {nid} delivery raised {type(result).__name__}: {result}")
            return DeliveryOutcome(nid, False, result)
        return DeliveryOutcome(nid, bool(result.sent_success))

    async def _requeue(self, notification_id: str) -> bool:
        current = await self._store.find_notification(notification_id)
        if current is None or current.sent:
            return False
        if current.retry_count >= self._max_retries:
            logger.warning(
                f"Notification {notification_id} reached {self._max_retries} retries, leaving it unsent"
            )
            return False

        new_count = await self._store.increment_notification_retry_count(notification_id, self._max_retries)
        if new_count is None:
            return False

        policy = RetryPolicy.notification_requeue()
        await self._producer.add_job(
            self._queue_name,
            {"notification_id": notification_id},
            JobOptions(priority=REQUEUE_PRIORITY, attempts=policy.max_attempts, backoff=policy.backoff),
        )
        logger.info(f"Requeued notification {notification_id} (retry {new_count}/{self._max_retries})")
        return True


async def handle(ctx: JobContext, job: Job) -> DispatchReport:
    dispatcher = NotificationDispatcher(ctx.db, ctx.notifier, ctx.producer)
    return await dispatcher.run_cycle(job.payload.get("notification_id"))


async def add_send_notifications_job(ctx: JobContext) -> str:
    policy = RetryPolicy.dispatch_cycle()
    return await add_recurring_job(
        ctx,
        QUEUE_NAME,
        ctx.settings.notification_dispatch_interval,
        attempts=policy.max_attempts,
        backoff=policy.backoff,
    )
