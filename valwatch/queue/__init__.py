"""Durable job queues backed by Redis."""

from valwatch.queue.producer import JobProducer
from valwatch.queue.queue import DurableQueue
from valwatch.queue.registry import QueueRegistry
from valwatch.queue.types import Job, JobCounts, JobHandler, JobOptions, QueueHealthSnapshot

__all__ = [
    "DurableQueue",
    "Job",
    "JobCounts",
    "JobHandler",
    "JobOptions",
    "JobProducer",
    "QueueHealthSnapshot",
    "QueueRegistry",
]
