"""Health monitor: job liveness and application liveness timers."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from valwatch.queue import QueueHealthSnapshot, QueueRegistry

logger = logging.getLogger(__name__)

JOB_HEALTH_JOB_ID = "health:jobs"
APP_HEALTH_JOB_ID = "health:app"


@dataclass(frozen=True)
class AppHealthState:
    """Result of one application liveness check. Healthy only if every part is."""

    broker_ok: bool
    store_ok: bool
    stalled_queues: tuple[str, ...] = ()

    @property
    def healthy(self) -> bool:
        return self.broker_ok and self.store_ok and not self.stalled_queues

    def describe(self) -> str:
        problems = []
        if not self.broker_ok:
            problems.append("broker unreachable")
        if not self.store_ok:
            problems.append("store unreachable")
        if self.stalled_queues:
            problems.append(f"stalled queues: {', '.join(self.stalled_queues)}")
        return "; ".join(problems) or "healthy"


class Supervisor(Protocol):
    def mark_degraded(self, reason: str) -> None: ...

    def mark_healthy(self) -> None: ...

    def request_reinitialize(self, state: AppHealthState) -> None: ...


class Pingable(Protocol):
    async def ping(self) -> bool: ...


class HealthMonitor:
    """
    Two independent timers over the registry's queues.

    - Job liveness: a recurring queue with nothing waiting, active or delayed
      has lost its schedule; its producer is invoked once to reseed it.
    - App liveness: broker ping, store ping and no stalled recurring queue.
      Any failure asks the supervisor for a full reinitialization.

    Only queues listed in ``producers`` (the recurring ones) are checked.
    """

    def __init__(
        self,
        registry: QueueRegistry,
        store: Pingable,
        producers: dict[str, Callable[[], Awaitable[object]]],
        supervisor: Optional[Supervisor] = None,
        *,
        job_check_interval: float = 300,
        app_check_interval: float = 60,
    ):
        self._registry = registry
        self._store = store
        self._producers = producers
        self._supervisor = supervisor
        self._job_check_interval = job_check_interval
        self._app_check_interval = app_check_interval
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._inflight: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    async def _snapshot(self, name: str) -> Optional[QueueHealthSnapshot]:
        queue = self._registry.get_queue(name)
        if queue is None:
            return None
        return await queue.snapshot()

    async def check_job_health(self) -> list[str]:
        """Reseed every stalled recurring queue. Returns the stalled queue names."""
        stalled = []
        for name, produce in self._producers.items():
            try:
                snapshot = await self._snapshot(name)
            except Exception as e:
                logger.error(f"Could not read counts of queue {name}: {e}")
                continue

            if snapshot is not None and not snapshot.stalled:
                continue

            last = self._registry.last_completed_at(name)
            since = f"{time.time() - last:.0f}s ago" if last else "never"
            logger.warning(f"Queue {name} is stalled (last completed job {since}), rescheduling")
            stalled.append(name)
            try:
                await produce()
            except Exception as e:
                logger.error(f"Failed to reschedule {name}: {e}")

        if stalled and self._supervisor is not None:
            self._supervisor.mark_degraded(f"stalled queues: {', '.join(stalled)}")
        return stalled

    async def check_app_health(self) -> AppHealthState:
        """Evaluate broker, store and queue liveness and act on the result."""
        broker_ok = await self._registry.check_broker_connectivity()

        try:
            store_ok = bool(await self._store.ping())
        except Exception as e:
            logger.error(f"Store ping failed: {e}")
            store_ok = False

        stalled = []
        for name in self._producers:
            try:
                snapshot = await self._snapshot(name)
            except Exception as e:
                logger.error(f"Could not read counts of queue {name}: {e}")
                snapshot = None
            if snapshot is None or snapshot.stalled:
                stalled.append(name)

        state = AppHealthState(broker_ok, store_ok, tuple(stalled))
        if state.healthy:
            logger.debug("Application health check passed")
            if self._supervisor is not None:
                self._supervisor.mark_healthy()
        else:
            logger.error(f"Application health check failed: {state.describe()}")
            if self._supervisor is not None:
                self._supervisor.request_reinitialize(state)
        return state

    async def _tracked(self, check: Callable[[], Awaitable[object]]) -> None:
        task = asyncio.current_task()
        self._inflight.add(task)
        try:
            await check()
        finally:
            self._inflight.discard(task)

    def start(self) -> None:
        """Start both timers. Must be called from a running event loop."""
        if self._scheduler is not None:
            return

        self._scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # If multiple runs are missed, only run once
                "max_instances": 1,  # Prevent overlapping checks
                "misfire_grace_time": 30,
            },
        )
        self._scheduler.add_job(
            self._tracked,
            IntervalTrigger(seconds=self._job_check_interval),
            args=[self.check_job_health],
            id=JOB_HEALTH_JOB_ID,
            name="Job liveness check",
        )
        self._scheduler.add_job(
            self._tracked,
            IntervalTrigger(seconds=self._app_check_interval),
            args=[self.check_app_health],
            id=APP_HEALTH_JOB_ID,
            name="Application liveness check",
        )
        self._scheduler.start()
        logger.info(
            f"Health monitor started (jobs every {self._job_check_interval}s, "
            f"app every {self._app_check_interval}s)"
        )

    async def stop(self) -> None:
        """Stop both timers and cancel checks in flight, except the caller's own."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None

        current = asyncio.current_task()
        pending = [task for task in self._inflight if task is not current and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Health monitor stopped")
