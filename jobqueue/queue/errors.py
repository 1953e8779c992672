"""Exceptions raised by the job queue."""

from typing import Optional


class JobQueueError(Exception):
    """Base class for job queue errors."""


class StoreUnavailableError(JobQueueError, ConnectionError):
    """The backing key-value store cannot be reached.

    Raised instead of pretending a write succeeded, so callers can fail the
    request rather than assume the job is durable.
    """

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        message = f"Store unavailable during {operation}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
