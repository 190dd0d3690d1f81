"""
Exception taxonomy.

Store outages surface to producers as StoreUnavailable; limiter store
outages are raised by the stores and absorbed by the limiter (fail-open).
Handler failures never cross the worker boundary.
"""

from typing import Any


class WorkgateError(Exception):
    """Base exception for the application."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class StoreUnavailable(WorkgateError):
    """Raised when the job store cannot be reached."""


class InvalidJobError(WorkgateError, ValueError):
    """Raised when enqueue arguments are invalid."""


class HandlerFailure(WorkgateError):
    """
    Raised by job handlers to signal a processing error.

    Treated like any other handler exception: the job is nacked and
    retried per the backoff policy.
    """


class LimiterStoreUnavailable(WorkgateError):
    """Raised by rate-limit stores when the backing store is unreachable."""
