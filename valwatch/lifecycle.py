"""Application lifecycle: ordered startup, supervision and graceful shutdown."""

from __future__ import annotations

import asyncio
import functools
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from valwatch.config import Settings
from valwatch.errors import NotifierError, QueueUnavailable, StartupFailed
from valwatch.events import Connected, Disconnected, MessageReceived, StreamError
from valwatch.health import AppHealthState, HealthMonitor
from valwatch.jobs import JOB_DEFINITIONS, JobContext, JobDefinition
from valwatch.jobs.event_result import add_ws_message_result_handler_job
from valwatch.queue import JobProducer, QueueRegistry
from valwatch.retry import RetryPolicy, Sleep, retry

logger = logging.getLogger(__name__)


class AppState(str, Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    REINITIALIZING = "reinitializing"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Application:
    """
    Owns every long-lived component and the order they start and stop in.

    Startup: store (plus configured subscribers) -> event stream -> notifier ->
    queues -> recurring jobs -> health monitor. The whole sequence is retried
    with exponential backoff and ``StartupFailed`` is raised once the attempts
    run out. Every attempt reconnects the store from scratch.

    Once running, a keepalive task checks the bot with ``getMe`` and saves the
    chats that message it as subscribers.

    The health monitor reports back through ``mark_degraded``,
    ``mark_healthy`` and ``request_reinitialize``. Only one reinitialization
    runs at a time; requests arriving meanwhile are ignored.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        db,
        notifier,
        chain,
        event_stream,
        registry_factory: Optional[Callable[[], QueueRegistry]] = None,
        job_definitions: Optional[list[JobDefinition]] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.db = db
        self.notifier = notifier
        self.chain = chain
        self.event_stream = event_stream
        self._registry_factory = registry_factory or (
            lambda: QueueRegistry(settings.redis_url, prefix=settings.queue_prefix)
        )
        self._job_definitions = job_definitions if job_definitions is not None else JOB_DEFINITIONS
        self._sleep = sleep

        self.state = AppState.STARTING
        self.exit_code = 0
        self.registry: Optional[QueueRegistry] = None
        self.producer: Optional[JobProducer] = None
        self.ctx: Optional[JobContext] = None
        self.health: Optional[HealthMonitor] = None
        self._background: set[asyncio.Task] = set()
        self._reinit_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._events = event_stream.subscribe()

    def _set_state(self, state: AppState) -> None:
        if state != self.state:
            logger.info(f"Application state {self.state.value} -> {state.value}")
            self.state = state

    # -------------------------------------------------------------------------
    # Startup
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Run the startup sequence with retries.

        Raises:
            StartupFailed: every attempt failed
        """
        if self.state != AppState.REINITIALIZING:
            self._set_state(AppState.STARTING)
        policy = RetryPolicy.startup(self.settings.startup_max_attempts, self.settings.startup_backoff_base)
        try:
            await retry(self._initialize, policy, name="Startup", sleep=self._sleep)
        except Exception as e:
            self._set_state(AppState.FAILED)
            raise StartupFailed(policy.max_attempts, e) from e
        self._set_state(AppState.HEALTHY)
        logger.info("Application started")

    async def _initialize(self) -> None:
        # A previous failed attempt may have left queues or timers behind
        await self._teardown_runtime()
        # Always reconnect; a broken store connection may be why we are here
        await self._reset_store()

        await self.db.connect()
        await self._seed_subscribers()
        await self.event_stream.connect()
        await self.notifier.start()

        self.registry = self._registry_factory()
        self.producer = JobProducer(self.registry)
        self.ctx = JobContext(self.settings, self.db, self.chain, self.notifier, self.producer)

        for definition in self._job_definitions:
            queue = await self.registry.get_or_create_queue(definition.queue_name)
            queue.process(definition.bind(self.ctx))
        logger.info(f"Queues ready: {', '.join(d.queue_name for d in self._job_definitions)}")

        for definition in self._job_definitions:
            if definition.recurring:
                await self._seed(definition)
        self._spawn(self._forward_events(), name="event-forwarder")
        self._spawn(self._watch_bot(), name="bot-keepalive")

        self.health = HealthMonitor(
            self.registry,
            self.db,
            self.producers(),
            supervisor=self,
            job_check_interval=self.settings.job_health_check_interval,
            app_check_interval=self.settings.app_health_check_interval,
        )
        self.health.start()

    async def _reset_store(self) -> None:
        try:
            await self.db.close()
        except Exception as e:
            logger.warning(f"Failed to close store before reconnecting: {e}")

    async def _seed_subscribers(self) -> None:
        chat_ids = self.settings.telegram_chat_ids
        for chat_id in chat_ids:
            await self.db.add_telegram_user(str(chat_id))
        if chat_ids:
            logger.info(f"Registered {len(chat_ids)} configured Telegram chat(s)")

    def producers(self) -> dict[str, Callable[[], Awaitable[Any]]]:
        """Producer function of every recurring queue, bound to the current context."""
        return {
            d.queue_name: functools.partial(d.producer, self.ctx) for d in self._job_definitions if d.recurring
        }

    async def _seed(self, definition: JobDefinition) -> None:
        produce = functools.partial(definition.producer, self.ctx)
        try:
            await produce()
        except Exception as e:
            interval = self.settings.job_init_retry_interval
            logger.error(f"Failed to schedule {definition.queue_name}: {e}. Retrying every {interval}s")
            self._spawn(self._retry_seed(definition.queue_name, produce, interval), name=f"job-init:{definition.queue_name}")

    async def _retry_seed(self, name: str, produce: Callable[[], Awaitable[Any]], interval: float) -> None:
        await self._sleep(interval)
        await retry(produce, RetryPolicy.job_init(interval), name=f"Scheduling {name}", sleep=self._sleep)
        logger.info(f"Scheduled {name} after retrying")

    async def _forward_events(self) -> None:
        while True:
            event = await self._events.get()
            if isinstance(event, MessageReceived):
                try:
                    await add_ws_message_result_handler_job(self.ctx, event.data)
                except QueueUnavailable as e:
                    logger.error(f"Dropping event stream message: {e}")
            elif isinstance(event, StreamError):
                logger.error(f"Event stream error: {event.error}")
            elif isinstance(event, (Connected, Disconnected)):
                logger.debug(f"Event stream {type(event).__name__.lower()}: {event.url}")

    async def check_bot(self) -> bool:
        """Reconnect the bot if ``getMe`` fails and save chats that wrote to it.

        Returns False if the bot is still unreachable.
        """
        if not await self.notifier.ping():
            logger.error("Bot connection lost, reconnecting")
            try:
                await self.notifier.start()
            except NotifierError as e:
                logger.error(f"Bot reconnect failed: {e}")
                return False

        try:
            chats = await self.notifier.get_new_chats()
        except NotifierError as e:
            logger.warning(f"Could not fetch bot updates: {e}")
            return True
        for chat_id, username in chats:
            await self.db.add_telegram_user(chat_id, username)
        if chats:
            logger.info(f"Saved {len(chats)} Telegram chat(s)")
        return True

    async def _watch_bot(self) -> None:
        while True:
            await asyncio.sleep(self.settings.bot_keepalive_interval)
            try:
                await self.check_bot()
            except Exception as e:
                logger.error(f"Bot keepalive failed: {e}")

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # -------------------------------------------------------------------------
    # Supervision
    # -------------------------------------------------------------------------

    def mark_degraded(self, reason: str) -> None:
        if self.state == AppState.HEALTHY:
            logger.warning(f"Application degraded: {reason}")
            self._set_state(AppState.DEGRADED)

    def mark_healthy(self) -> None:
        if self.state == AppState.DEGRADED:
            self._set_state(AppState.HEALTHY)

    def request_reinitialize(self, health: AppHealthState) -> None:
        """Schedule a full reinitialization unless one is running or the app is stopping."""
        if self.state in (AppState.REINITIALIZING, AppState.STOPPING, AppState.STOPPED, AppState.FAILED):
            logger.info(f"Ignoring reinitialization request while {self.state.value}")
            return
        if self._reinit_task is not None and not self._reinit_task.done():
            logger.info("Reinitialization already in progress")
            return
        self._set_state(AppState.REINITIALIZING)
        self._reinit_task = asyncio.create_task(self._reinitialize(health), name="reinitialize")

    async def _reinitialize(self, health: AppHealthState) -> None:
        logger.error(f"Reinitializing application: {health.describe()}")
        try:
            await self.start()
        except StartupFailed as e:
            logger.critical(f"Reinitialization failed: {e}")
            self.exit_code = 1
            self._stop_event.set()

    @property
    def reinitializing(self) -> Optional[asyncio.Task]:
        return self._reinit_task

    # -------------------------------------------------------------------------
    # Shutdown
    # -------------------------------------------------------------------------

    async def _cancel_background(self) -> None:
        tasks = [task for task in self._background if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    async def _teardown_runtime(self) -> bool:
        """Stop health timers and background tasks, then close queues and the broker."""
        clean = True
        if self.health is not None:
            try:
                await self.health.stop()
            except Exception as e:
                clean = False
                logger.error(f"Failed to stop health monitor: {e}")
            self.health = None

        await self._cancel_background()

        if self.registry is not None:
            try:
                await self.registry.stop_listening()
                clean = await self.registry.close_all() and clean
            except Exception as e:
                clean = False
                logger.error(f"Failed to close queues: {e}")
            self.registry = None
        return clean

    def request_stop(self) -> None:
        """Ask ``serve`` to shut down. Safe to call from a signal handler."""
        self._stop_event.set()

    async def shutdown(self) -> bool:
        """Stop everything, best effort. Returns True if every step succeeded."""
        if self.state in (AppState.STOPPING, AppState.STOPPED):
            return True
        self._set_state(AppState.STOPPING)

        reinit = self._reinit_task
        if reinit is not None and not reinit.done() and reinit is not asyncio.current_task():
            reinit.cancel()
            await asyncio.gather(reinit, return_exceptions=True)

        clean = await self._teardown_runtime()

        steps = [
            ("store", self.db.close),
            ("notifier", self.notifier.stop),
            ("event stream", self.event_stream.close),
            ("chain client", self.chain.close),
        ]
        for name, close in steps:
            try:
                await close()
                logger.info(f"Closed {name}")
            except Exception as e:
                clean = False
                logger.error(f"Failed to close {name}: {e}")

        self._set_state(AppState.STOPPED)
        return clean

    async def serve(self) -> int:
        """Start, run until stopped, shut down. Returns the process exit code."""
        try:
            await self.start()
        except StartupFailed as e:
            logger.critical(str(e))
            await self.shutdown()
            return 1

        await self._stop_event.wait()
        logger.info("Shutting down")
        clean = await self.shutdown()
        if self.exit_code:
            return self.exit_code
        return 0 if clean else 1
