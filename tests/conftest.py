"""Pytest configuration, fixtures and in-memory fakes."""

import asyncio

import fakeredis
import pytest
import pytest_asyncio

from valwatch.config import RpcEndpoint, Settings
from valwatch.database import Database
from valwatch.queue import JobCounts, QueueHealthSnapshot

VOTER = "axelar1voter0000000000000000000000000000000"
VALCONS = "axelarvalcons1abc"
OPERATOR = "axelarvaloper1operator"


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        tg_token="123:abc",
        axelar_voter_address=VOTER,
        broadcaster_balance_threshold=1_000_000,
        rpc_endpoints=[RpcEndpoint(name="main", url="https://rpc.example.com")],
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "valwatch.db")
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


class Clock:
    """Controllable wall clock in seconds."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeQueue:
    """In-memory queue handle with fixed counts."""

    def __init__(self, name, counts=None):
        self.name = name
        self.counts = counts or JobCounts()
        self.added = []
        self.handler = None
        self.emptied = False
        self.stopped = False
        self.closed = False
        self.close_error = None

    def on_completed(self, observer):
        pass

    def on_failed(self, observer):
        pass

    def on_error(self, observer):
        pass

    async def add(self, payload=None, options=None):
        self.added.append((payload, options))
        return str(len(self.added))

    def process(self, handler, poll_interval=1.0):
        self.handler = handler

    async def get_job_counts(self):
        return self.counts

    async def snapshot(self) -> QueueHealthSnapshot:
        return self.counts.snapshot()

    async def empty(self):
        self.emptied = True

    async def stop(self):
        self.stopped = True

    async def close(self):
        if self.close_error:
            raise self.close_error
        self.closed = True


class FakeRegistry:
    """Registry over FakeQueues; records creation order."""

    def __init__(self, order=None, broker_ok=True):
        self.order = order if order is not None else []
        self.broker_ok = broker_ok
        self.queues = {}
        self.stopped = False
        self.closed = False

    def add(self, queue):
        self.queues[queue.name] = queue
        return queue

    async def get_or_create_queue(self, name):
        if name not in self.queues:
            self.order.append(f"queue:{name}")
            self.queues[name] = FakeQueue(name)
        return self.queues[name]

    def get_queue(self, name):
        return self.queues.get(name)

    def list_queues(self):
        return list(self.queues.values())

    def last_completed_at(self, name):
        return None

    async def check_broker_connectivity(self):
        return self.broker_ok

    async def stop_listening(self):
        self.stopped = True

    async def close_all(self):
        self.closed = True
        return True


class FakeProducer:
    """Records add_job calls."""

    def __init__(self):
        self.jobs = []

    async def add_job(self, queue_name, payload=None, options=None):
        self.jobs.append((queue_name, payload, options))
        return str(len(self.jobs))


class FakeNotifier:
    """Replays scripted delivery results per notification id.

    A script entry is either a NotifierResult or an exception to raise.
    """

    def __init__(self, script=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls = []
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def send_notification(self, notification):
        self.calls.append(notification.notification_id)
        outcome = self.script[notification.notification_id].pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome
