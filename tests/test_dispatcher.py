"""Tests for jobs/dispatcher.py - the outbox dispatch cycle."""

import functools

import pytest

from tests.conftest import Clock, FakeNotifier, FakeProducer
from valwatch.errors import NotifierError, SpecificError
from valwatch.jobs import dispatcher as dispatch_job
from valwatch.jobs.base import JobContext
from valwatch.jobs.dispatcher import QUEUE_NAME, REQUEUE_PRIORITY, NotificationDispatcher
from valwatch.models import MAX_RETRIES, Notification, NotificationEvent
from valwatch.notifier import NotifierResult
from valwatch.queue import DurableQueue, Job, JobProducer, QueueRegistry
from valwatch.retry import Backoff

OK = NotifierResult(sent_success=True)
REJECTED = NotifierResult(sent_success=False)


async def outbox(db, *ids):
    for i, nid in enumerate(ids):
        await db.create_notification(
            Notification(
                notification_id=nid,
                event=NotificationEvent.RPC_ENDPOINT_HEALTH,
                recipient="42",
                data={"name": "main", "url": "https://rpc.example.com", "is_healthy": False},
                created_at=100.0 + i,
            )
        )


async def run_until_settled(dispatcher, producer, max_cycles=10):
    """Run the scheduled cycle, then every requeued retry job in turn."""
    await dispatcher.run_cycle()
    handled = 0
    while handled < len(producer.jobs) and max_cycles:
        _, payload, _ = producer.jobs[handled]
        handled += 1
        max_cycles -= 1
        await dispatcher.run_cycle(payload["notification_id"])


class TestScenarios:
    @pytest.mark.asyncio
    async def test_two_failures_then_success(self, db):
        """Test a notification is delivered on its third attempt."""
        await outbox(db, "n1")
        notifier = FakeNotifier({"n1": [REJECTED, NotifierError("timeout"), OK]})
        producer = FakeProducer()

        await run_until_settled(NotificationDispatcher(db, notifier, producer), producer)

        n1 = await db.find_notification("n1")
        assert n1.sent is True
        assert n1.retry_count == 2
        assert notifier.calls == ["n1", "n1", "n1"]

    @pytest.mark.asyncio
    async def test_four_failures_leave_record_unsent(self, db):
        """Test a notification failing past the retry cap stays unsent."""
        await outbox(db, "n1")
        notifier = FakeNotifier({"n1": [REJECTED] * 4})
        producer = FakeProducer()
        dispatcher = NotificationDispatcher(db, notifier, producer)

        await run_until_settled(dispatcher, producer)

        n1 = await db.find_notification("n1")
        assert n1.sent is False
        assert n1.retry_count == MAX_RETRIES
        assert len(notifier.calls) == 4
        assert len(producer.jobs) == 3

        # Scheduled cycles no longer pick it up
        report = await dispatcher.run_cycle()
        assert report.fetched == 0


class TestCycle:
    @pytest.mark.asyncio
    async def test_delivers_oldest_first(self, db):
        """Test the outbox is delivered oldest first."""
        await outbox(db, "a", "b", "c")
        notifier = FakeNotifier({"a": [OK], "b": [OK], "c": [OK]})

        report = await NotificationDispatcher(db, notifier, FakeProducer()).run_cycle()
        assert notifier.calls == ["a", "b", "c"]
        assert report.sent == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_requeue_uses_priority_and_fresh_backoff(self, db):
        """Test a failed delivery is requeued with priority and backoff."""
        await outbox(db, "n1")
        producer = FakeProducer()
        await NotificationDispatcher(db, FakeNotifier({"n1": [REJECTED]}), producer).run_cycle()

        queue_name, payload, options = producer.jobs[0]
        assert queue_name == QUEUE_NAME
        assert payload == {"notification_id": "n1"}
        assert options.priority == REQUEUE_PRIORITY
        assert options.attempts == 3
        assert options.backoff == Backoff.exponential(1.0)
        assert (await db.find_notification("n1")).retry_count == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_siblings(self, db):
        """Test one failed delivery does not stop the others."""
        await outbox(db, "a", "b", "c")
        notifier = FakeNotifier({"a": [OK], "b": [NotifierError("down")], "c": [OK]})
        producer = FakeProducer()

        report = await NotificationDispatcher(db, notifier, producer).run_cycle()
        assert report.sent == ["a", "c"]
        assert report.requeued == ["b"]
        assert (await db.find_notification("c")).sent is True

    @pytest.mark.asyncio
    async def test_specific_error_is_a_failed_outcome(self, db):
        """Test an undeliverable message counts as failed."""
        await outbox(db, "n1")
        notifier = FakeNotifier({"n1": [SpecificError("malformed")]})
        producer = FakeProducer()

        report = await NotificationDispatcher(db, notifier, producer).run_cycle()
        assert report.failed == ["n1"]
        assert len(producer.jobs) == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_propagates_after_bookkeeping(self, db):
        """Test unexpected errors are raised after the cycle is committed."""
        await outbox(db, "a", "b")
        notifier = FakeNotifier({"a": [KeyError("bug")], "b": [OK]})
        producer = FakeProducer()

        with pytest.raises(KeyError):
            await NotificationDispatcher(db, notifier, producer).run_cycle()
        assert (await db.find_notification("b")).sent is True
        assert (await db.find_notification("a")).retry_count == 1
        assert len(producer.jobs) == 1

    @pytest.mark.asyncio
    async def test_retry_job_for_sent_record_is_a_no_op(self, db):
        """Test a retry job for a sent notification does nothing."""
        await outbox(db, "n1")
        await db.mark_notification_sent("n1")
        notifier = FakeNotifier()

        report = await NotificationDispatcher(db, notifier, FakeProducer()).run_cycle("n1")
        assert report.fetched == 0
        assert notifier.calls == []

    @pytest.mark.asyncio
    async def test_sent_records_are_never_fetched_again(self, db):
        """Test sent notifications are not delivered twice."""
        await outbox(db, "n1")
        notifier = FakeNotifier({"n1": [OK]})
        dispatcher = NotificationDispatcher(db, notifier, FakeProducer())

        await dispatcher.run_cycle()
        await dispatcher.run_cycle()
        assert notifier.calls == ["n1"]

    @pytest.mark.asyncio
    async def test_empty_outbox(self, db):
        """Test an empty outbox is a no-op cycle."""
        report = await NotificationDispatcher(db, FakeNotifier(), FakeProducer()).run_cycle()
        assert report.fetched == 0


class TestScheduledJob:
    @pytest.mark.asyncio
    async def test_raising_cycle_is_retried_by_the_queue(self, db, redis, settings):
        """Test a raising dispatch job goes back to delayed with backoff instead of failing."""
        clock = Clock(1_000.0)
        registry = QueueRegistry(
            client=redis,
            queue_factory=lambda name, client, prefix: DurableQueue(name, client, prefix, clock=clock),
        )
        ctx = JobContext(settings, db, None, FakeNotifier({"n1": [KeyError("boom")]}), JobProducer(registry))
        await outbox(db, "n1")

        job_id = await dispatch_job.add_send_notifications_job(ctx)
        queue = registry.get_queue(QUEUE_NAME)
        seeded = Job.loads(await redis.hget(f"valwatch:{QUEUE_NAME}:jobs", job_id))
        assert seeded.options.attempts == 3
        assert seeded.options.backoff == Backoff.exponential(2.0)

        clock.advance(settings.notification_dispatch_interval)
        assert await queue.run_once(functools.partial(dispatch_job.handle, ctx)) is True

        counts = await queue.get_job_counts()
        assert counts.failed == 0
        assert counts.completed == 0
        # first retry waits 2s
        assert await redis.zscore(f"valwatch:{QUEUE_NAME}:delayed", job_id) == 1_010_000 + 2_000
        retried = Job.loads(await redis.hget(f"valwatch:{QUEUE_NAME}:jobs", job_id))
        assert retried.attempts_made == 1
