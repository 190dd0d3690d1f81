"""
Event type definitions for worker lifecycle messaging.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from workgate.constants import JobEventType, JobStatus
from workgate.utils import utcnow


class JobEvent(BaseModel):
    """
    Event emitted when job state changes.
    Published by the worker and reaper, consumed by the monitor.
    """

    event_type: JobEventType
    job_id: UUID
    job_type: str
    status: JobStatus
    attempts: int
    timestamp: datetime
    data: dict[str, Any] | None = None

    @classmethod
    def leased(
        cls,
        job_id: UUID,
        job_type: str,
        worker_id: str,
        attempts: int,
    ) -> "JobEvent":
        """Create a job leased event."""
        return cls(
            event_type=JobEventType.LEASED,
            job_id=job_id,
            job_type=job_type,
            status=JobStatus.PROCESSING,
            attempts=attempts,
            timestamp=utcnow(),
            data={"worker_id": worker_id},
        )

    @classmethod
    def completed(
        cls,
        job_id: UUID,
        job_type: str,
        attempts: int,
        duration_seconds: float | None = None,
    ) -> "JobEvent":
        """Create a job completed event."""
        return cls(
            event_type=JobEventType.COMPLETED,
            job_id=job_id,
            job_type=job_type,
            status=JobStatus.COMPLETED,
            attempts=attempts,
            timestamp=utcnow(),
            data={"duration_seconds": duration_seconds},
        )

    @classmethod
    def failed(
        cls,
        job_id: UUID,
        job_type: str,
        error: str,
        attempts: int,
        will_retry: bool,
    ) -> "JobEvent":
        """Create a job failed event (a retry or the terminal failure)."""
        return cls(
            event_type=JobEventType.FAILED,
            job_id=job_id,
            job_type=job_type,
            status=JobStatus.PENDING if will_retry else JobStatus.FAILED,
            attempts=attempts,
            timestamp=utcnow(),
            data={"error": error, "will_retry": will_retry},
        )

    @classmethod
    def stalled(
        cls,
        job_id: UUID,
        job_type: str,
        attempts: int,
        status: JobStatus,
    ) -> "JobEvent":
        """Create a stalled-lease event."""
        return cls(
            event_type=JobEventType.STALLED,
            job_id=job_id,
            job_type=job_type,
            status=status,
            attempts=attempts,
            timestamp=utcnow(),
        )

    @property
    def is_finished_attempt(self) -> bool:
        """Whether this event ends a handler attempt (success or failure)."""
        return self.event_type in (JobEventType.COMPLETED, JobEventType.FAILED)
