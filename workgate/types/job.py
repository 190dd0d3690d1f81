"""
Job-related type definitions for internal use.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from workgate.constants import PROGRESS_MAX, PROGRESS_MIN

ProgressCallback = Callable[[float], Awaitable[int]]


def clamp_progress(value: float) -> int:
    """Clamp a progress value into the 0-100 range."""
    return int(max(PROGRESS_MIN, min(PROGRESS_MAX, value)))


async def _untracked_progress(value: float) -> int:
    return clamp_progress(value)


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by job handlers after processing.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains the payload and the progress-reporting callback.
    """

    job_id: UUID
    job_type: str
    idempotency_key: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    lease_owner: str
    lease_expires_at: datetime | None
    report_progress: ProgressCallback = _untracked_progress

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts after this one."""
        return max(0, self.max_attempts - self.attempt)


@dataclass
class LeaseInfo:
    """
    Information about a job lease held by this worker.
    Used by the heartbeat loop to track in-flight jobs.
    """

    job_id: UUID
    job_type: str
    lease_owner: str
    lease_expires_at: datetime
    acquired_at: datetime
