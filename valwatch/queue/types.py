"""Core types for durable queues and jobs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional

from valwatch.retry import Backoff


@dataclass(frozen=True)
class JobOptions:
    """Scheduling and retry options for a job.

    A larger ``priority`` is served earlier; equal priorities are served in
    insertion order. ``attempts`` is the total number of tries the broker makes
    before counting the job as failed.
    """

    repeat_every: Optional[timedelta] = None
    priority: int = 0
    attempts: int = 1
    backoff: Optional[Backoff] = None
    delay: Optional[timedelta] = None

    @staticmethod
    def every(interval: timedelta, **kwargs: Any) -> "JobOptions":
        """Options for a recurring job."""
        return JobOptions(repeat_every=interval, **kwargs)

    def to_dict(self) -> dict:
        return {
            "repeat_every_ms": _ms(self.repeat_every),
            "priority": self.priority,
            "attempts": self.attempts,
            "backoff": self.backoff.to_dict() if self.backoff else None,
            "delay_ms": _ms(self.delay),
        }

    @staticmethod
    def from_dict(data: dict) -> "JobOptions":
        return JobOptions(
            repeat_every=_td(data.get("repeat_every_ms")),
            priority=data.get("priority", 0),
            attempts=data.get("attempts", 1),
            backoff=Backoff.from_dict(data["backoff"]) if data.get("backoff") else None,
            delay=_td(data.get("delay_ms")),
        )


@dataclass
class Job:
    """A unit of work taken from a queue."""

    id: str
    queue_name: str
    payload: dict[str, Any] = field(default_factory=dict)
    options: JobOptions = field(default_factory=JobOptions)
    attempts_made: int = 0
    timestamp: int = 0  # ms since epoch when the job was created or scheduled

    @property
    def is_repeat(self) -> bool:
        return self.id.startswith("repeat:")

    def dumps(self) -> str:
        return json.dumps(
            {
                "id": self.id,
                "queue_name": self.queue_name,
                "payload": self.payload,
                "options": self.options.to_dict(),
                "attempts_made": self.attempts_made,
                "timestamp": self.timestamp,
            }
        )

    @staticmethod
    def loads(raw: str | bytes) -> "Job":
        data = json.loads(raw)
        return Job(
            id=data["id"],
            queue_name=data["queue_name"],
            payload=data.get("payload") or {},
            options=JobOptions.from_dict(data.get("options") or {}),
            attempts_made=data.get("attempts_made", 0),
            timestamp=data.get("timestamp", 0),
        )


@dataclass(frozen=True)
class QueueHealthSnapshot:
    """Instantaneous view of a queue used by the health monitor."""

    waiting: int
    active: int
    delayed: int

    @property
    def stalled(self) -> bool:
        """A queue is stalled when nothing is waiting, running or scheduled."""
        return self.waiting == 0 and self.active == 0 and self.delayed == 0


@dataclass(frozen=True)
class JobCounts:
    """Job counts by state, as reported by the broker."""

    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0

    def snapshot(self) -> QueueHealthSnapshot:
        return QueueHealthSnapshot(self.waiting, self.active, self.delayed)


JobHandler = Callable[[Job], Awaitable[Any]]


def _ms(value: Optional[timedelta]) -> Optional[int]:
    return int(value.total_seconds() * 1000) if value is not None else None


def _td(value: Optional[int]) -> Optional[timedelta]:
    return timedelta(milliseconds=value) if value is not None else None
