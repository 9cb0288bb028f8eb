"""Retry policies and the retry-with-backoff combinator.

Every retry site in valwatch goes through this module: the startup ladder,
per-job initialization, the event stream reconnect loop, and (through
``Backoff``) the durable queue's own job retries.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


class BackoffKind(str, Enum):
    """How the delay grows between attempts."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class Backoff:
    """Delay between attempts, in seconds."""

    kind: BackoffKind = BackoffKind.FIXED
    delay: float = 0.0

    @staticmethod
    def fixed(delay: float) -> "Backoff":
        return Backoff(BackoffKind.FIXED, delay)

    @staticmethod
    def exponential(delay: float) -> "Backoff":
        return Backoff(BackoffKind.EXPONENTIAL, delay)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)."""
        if attempt < 1:
            attempt = 1
        if self.kind == BackoffKind.EXPONENTIAL:
            return self.delay * (2 ** (attempt - 1))
        return self.delay

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "delay_ms": int(self.delay * 1000)}

    @staticmethod
    def from_dict(data: dict) -> "Backoff":
        return Backoff(BackoffKind(data["kind"]), data["delay_ms"] / 1000)


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between.

    ``max_attempts=None`` retries forever.
    """

    max_attempts: Optional[int] = 3
    backoff: Backoff = Backoff.exponential(1.0)

    @staticmethod
    def startup(max_attempts: int = 3, base: float = 2.0) -> "RetryPolicy":
        """Whole-application startup: waits 2s, 4s, ... (``2^attempt`` seconds)."""
        return RetryPolicy(max_attempts=max_attempts, backoff=Backoff.exponential(base))

    @staticmethod
    def job_init(interval: float = 5.0) -> "RetryPolicy":
        """Per-job initialization: fixed interval, never gives up."""
        return RetryPolicy(max_attempts=None, backoff=Backoff.fixed(interval))

    @staticmethod
    def dispatch_cycle() -> "RetryPolicy":
        """A whole dispatch cycle that raised: 3 attempts, waiting 2s then 4s."""
        return RetryPolicy(max_attempts=3, backoff=Backoff.exponential(2.0))

    @staticmethod
    def notification_requeue() -> "RetryPolicy":
        """Broker-side policy attached to requeued notification jobs."""
        return RetryPolicy(max_attempts=3, backoff=Backoff.exponential(1.0))

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt >= self.max_attempts


async def retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    The last error is re-raised once ``policy.max_attempts`` attempts have failed.
    Cancellation is never retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if policy.exhausted(attempt):
                logger.error(f"{name} failed on attempt {attempt}/{policy.max_attempts}, giving up: {e}")
                raise
            delay = policy.backoff.delay_for(attempt)
            limit = policy.max_attempts if policy.max_attempts is not None else "∞"
            logger.warning(f"{name} failed (attempt {attempt}/{limit}): {e}. Retrying in {delay:.1f}s")
            await sleep(delay)
