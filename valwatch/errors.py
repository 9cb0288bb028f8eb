"""Error types shared across valwatch."""

from __future__ import annotations


class ValwatchError(Exception):
    """Base class for valwatch errors."""


class SpecificError(ValwatchError):
    """Expected, recoverable condition (e.g. a malformed notification payload).

    Caught at the dispatch boundary and turned into a failed delivery outcome.
    """


class NotifierError(ValwatchError):
    """Transport-level failure while delivering a notification."""


class ChainQueryError(ValwatchError):
    """Every configured REST endpoint failed for a chain query."""


class QueueUnavailable(ValwatchError):
    """A named queue could not be reached after the broker's own retries."""

    def __init__(self, queue_name: str, cause: BaseException | None = None):
        self.queue_name = queue_name
        self.cause = cause
        message = f"Queue {queue_name} is unavailable"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class StartupFailed(ValwatchError):
    """The startup sequence failed on every allowed attempt."""

    def __init__(self, attempts: int, cause: BaseException | None = None):
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"Startup failed after {attempts} attempt(s): {cause}")
