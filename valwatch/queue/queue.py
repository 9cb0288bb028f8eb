"""Redis-backed durable job queue.

Each named queue keeps its state under ``{prefix}:{name}:*``:

- ``jobs``      hash of job id -> serialized job
- ``wait``      sorted set of runnable job ids (priority first, then FIFO)
- ``delayed``   sorted set of job ids scored by the ms timestamp they become runnable
- ``active``    set of job ids currently being handled
- ``repeat``    hash of recurring schedules
- ``completed`` / ``failed`` counters

Recurring jobs are stored as ``repeat:{key}:{ms}`` where ``ms`` is aligned to
the repeat interval, so adding the same schedule twice within one interval
creates a single job.

Taking a job (``ZPOPMIN`` on ``wait``, ``HGET`` of the body, ``SADD`` to
``active``) is three separate commands, not one atomic step. A process that
dies between them loses that job. This is accepted because one process owns
each queue.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import Any, Callable, Optional

from redis.asyncio import Redis

from valwatch.queue.types import Job, JobCounts, JobHandler, JobOptions, QueueHealthSnapshot

logger = logging.getLogger(__name__)

# Keeps priority dominant over insertion order in the wait set score
PRIORITY_SPAN = 2**40

CompletedObserver = Callable[[Job, Any], None]
FailedObserver = Callable[[Job, BaseException], None]
ErrorObserver = Callable[[BaseException], None]


class DurableQueue:
    """Named work queue stored in Redis."""

    def __init__(
        self,
        name: str,
        client: Redis,
        prefix: str = "valwatch",
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self._client = client
        self._prefix = prefix
        self._clock = clock
        self._handler: Optional[JobHandler] = None
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._closed = False
        self._poll_interval = 1.0
        self._completed_observers: list[CompletedObserver] = []
        self._failed_observers: list[FailedObserver] = []
        self._error_observers: list[ErrorObserver] = []

    def __repr__(self) -> str:
        return f"DurableQueue({self.name!r})"

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    def on_completed(self, observer: CompletedObserver) -> None:
        self._completed_observers.append(observer)

    def on_failed(self, observer: FailedObserver) -> None:
        self._failed_observers.append(observer)

    def on_error(self, observer: ErrorObserver) -> None:
        self._error_observers.append(observer)

    def _notify(self, observers: list, *args: Any) -> None:
        for observer in observers:
            try:
                observer(*args)
            except Exception as e:
                logger.warning(f"Queue {self.name} observer raised: {e}")

    # -------------------------------------------------------------------------
    # Producing
    # -------------------------------------------------------------------------

    async def add(self, payload: Optional[dict] = None, options: Optional[JobOptions] = None) -> str:
        """Add a job and return its id."""
        self._ensure_open()
        payload = payload or {}
        options = options or JobOptions()
        now = self._now_ms()

        if options.repeat_every is not None:
            return await self._add_repeat(payload, options, now)

        job_id = str(await self._client.incr(self._key("id")))
        job = Job(id=job_id, queue_name=self.name, payload=payload, options=options, timestamp=now)
        await self._client.hset(self._key("jobs"), job_id, job.dumps())

        if options.delay is not None and options.delay.total_seconds() > 0:
            ready_at = now + int(options.delay.total_seconds() * 1000)
            await self._client.zadd(self._key("delayed"), {job_id: ready_at})
        else:
            await self._enqueue_waiting(job_id, options.priority)
        return job_id

    async def _add_repeat(self, payload: dict, options: JobOptions, now: int) -> str:
        every_ms = int(options.repeat_every.total_seconds() * 1000)
        if every_ms <= 0:
            raise ValueError(f"Repeat interval must be positive, got {options.repeat_every}")

        repeat_key = self._repeat_key(payload, every_ms)
        await self._client.hset(
            self._key("repeat"),
            repeat_key,
            json.dumps({"every_ms": every_ms, "payload": payload, "options": options.to_dict()}),
        )
        return await self._schedule_repeat(repeat_key, payload, options, _next_aligned(now, every_ms))

    async def _schedule_repeat(self, repeat_key: str, payload: dict, options: JobOptions, at_ms: int) -> str:
        job_id = f"repeat:{repeat_key}:{at_ms}"
        job = Job(id=job_id, queue_name=self.name, payload=payload, options=options, timestamp=at_ms)
        created = await self._client.hsetnx(self._key("jobs"), job_id, job.dumps())
        if created:
            await self._client.zadd(self._key("delayed"), {job_id: at_ms})
        return job_id

    async def _schedule_next_repeat(self, job: Job, now: int) -> None:
        repeat_key = job.id.split(":")[1]
        schedule = await self._client.hget(self._key("repeat"), repeat_key)
        if schedule is None:
            # Schedule was removed (queue emptied)
            return
        every_ms = json.loads(schedule)["every_ms"]
        await self._schedule_repeat(repeat_key, job.payload, job.options, _next_aligned(now, every_ms))

    async def _enqueue_waiting(self, job_id: str, priority: int) -> None:
        seq = await self._client.incr(self._key("seq"))
        await self._client.zadd(self._key("wait"), {job_id: seq - priority * PRIORITY_SPAN})

    def _repeat_key(self, payload: dict, every_ms: int) -> str:
        raw = f"{self.name}:{every_ms}:{json.dumps(payload, sort_keys=True)}"
        return hashlib.sha1(raw.encode()).hexdigest()[:16]

    # -------------------------------------------------------------------------
    # Consuming
    # -------------------------------------------------------------------------

    def process(self, handler: JobHandler, *, poll_interval: float = 1.0) -> None:
        """Start consuming jobs with ``handler`` in a background task."""
        self._ensure_open()
        if self._task is not None and not self._task.done():
            raise RuntimeError(f"Queue {self.name} is already being processed")
        self._handler = handler
        self._poll_interval = poll_interval
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"queue:{self.name}")
        logger.debug(f"Queue {self.name} processing started")

    @property
    def processing(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while self._running:
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._notify(self._error_observers, e)
                processed = False
            if not processed:
                await asyncio.sleep(self._poll_interval)

    async def run_once(self, handler: Optional[JobHandler] = None) -> bool:
        """Promote due delayed jobs, then take and handle one waiting job.

        Returns False when there was nothing to do.
        """
        handler = handler or self._handler
        if handler is None:
            raise RuntimeError(f"Queue {self.name} has no handler")

        now = self._now_ms()
        await self._promote_delayed(now)

        popped = await self._client.zpopmin(self._key("wait"))
        if not popped:
            return False
        job_id = popped[0][0]

        raw = await self._client.hget(self._key("jobs"), job_id)
        if raw is None:
            return True
        job = Job.loads(raw)

        await self._client.sadd(self._key("active"), job_id)
        if job.is_repeat and job.attempts_made == 0:
            await self._schedule_next_repeat(job, now)

        try:
            result = await handler(job)
        except asyncio.CancelledError:
            await self._release_interrupted(job)
            raise
        except Exception as e:
            await self._handle_failure(job, e)
        else:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.srem(self._key("active"), job_id)
                pipe.hdel(self._key("jobs"), job_id)
                pipe.incr(self._key("completed"))
                await pipe.execute()
            self._notify(self._completed_observers, job, result)
        return True

    async def _promote_delayed(self, now: int) -> None:
        due = await self._client.zrangebyscore(self._key("delayed"), "-inf", now)
        for job_id in due:
            # zrem decides which caller owns the promotion
            if not await self._client.zrem(self._key("delayed"), job_id):
                continue
            raw = await self._client.hget(self._key("jobs"), job_id)
            if raw is None:
                continue
            await self._enqueue_waiting(job_id, Job.loads(raw).options.priority)

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        job.attempts_made += 1
        max_attempts = max(job.options.attempts, 1)

        if job.attempts_made < max_attempts:
            delay = job.options.backoff.delay_for(job.attempts_made) if job.options.backoff else 0.0
            ready_at = self._now_ms() + int(delay * 1000)
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(self._key("jobs"), job.id, job.dumps())
                pipe.srem(self._key("active"), job.id)
                pipe.zadd(self._key("delayed"), {job.id: ready_at})
                await pipe.execute()
            logger.warning(
                f"Queue {self.name} job {job.id} failed (attempt {job.attempts_made}/{max_attempts}): "
                f"{error}. Retrying in {delay:.1f}s"
            )
            return

        async with self._client.pipeline(transaction=True) as pipe:
            pipe.srem(self._key("active"), job.id)
            pipe.hdel(self._key("jobs"), job.id)
            pipe.incr(self._key("failed"))
            await pipe.execute()
        self._notify(self._failed_observers, job, error)

    async def _release_interrupted(self, job: Job) -> None:
        try:
            await self._client.srem(self._key("active"), job.id)
            await self._enqueue_waiting(job.id, job.options.priority)
        except Exception as e:
            logger.warning(f"Queue {self.name} could not release interrupted job {job.id}: {e}")

    # -------------------------------------------------------------------------
    # Introspection and lifecycle
    # -------------------------------------------------------------------------

    async def get_job_counts(self) -> JobCounts:
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key("wait"))
            pipe.scard(self._key("active"))
            pipe.zcard(self._key("delayed"))
            pipe.get(self._key("completed"))
            pipe.get(self._key("failed"))
            waiting, active, delayed, completed, failed = await pipe.execute()
        return JobCounts(
            waiting=int(waiting),
            active=int(active),
            delayed=int(delayed),
            completed=int(completed or 0),
            failed=int(failed or 0),
        )

    async def snapshot(self) -> QueueHealthSnapshot:
        return (await self.get_job_counts()).snapshot()

    async def empty(self) -> None:
        """Drop waiting, delayed and active jobs along with recurring schedules."""
        await self._client.delete(
            self._key("wait"),
            self._key("delayed"),
            self._key("active"),
            self._key("jobs"),
            self._key("repeat"),
        )

    async def stop(self) -> None:
        """Stop listening for jobs. The job in flight, if any, goes back to waiting."""
        self._running = False
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Queue {self.name} processing stopped")

    async def close(self) -> None:
        await self.stop()
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError(f"Queue {self.name} is closed")

    def _key(self, suffix: str) -> str:
        return f"{self._prefix}:{self.name}:{suffix}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)


def _next_aligned(now_ms: int, every_ms: int) -> int:
    return (now_ms // every_ms + 1) * every_ms
