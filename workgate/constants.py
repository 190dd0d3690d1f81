"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - PENDING -> PROCESSING (lease acquired)
    - PROCESSING -> COMPLETED (ack)
    - PROCESSING -> PENDING (nack with attempts left, or stalled lease reaped)
    - PROCESSING -> FAILED (attempts exhausted)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.PENDING, JobStatus.PROCESSING}
)
TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED}
)


class AlertSeverity(StrEnum):
    """Alert severity levels."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ComponentStatus(StrEnum):
    """Reachability of one runtime dependency."""

    UP = "up"
    DOWN = "down"
    DEGRADED = "degraded"


class HealthState(StrEnum):
    """Overall runtime health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class LimiterOutcome(StrEnum):
    """How an admission was granted."""

    ALLOWED = "allowed"
    QUEUED = "queued"
    REJECTED = "rejected"


class JobEventType(StrEnum):
    """Worker lifecycle events published to the event channel."""

    LEASED = "leased"
    COMPLETED = "completed"
    FAILED = "failed"
    STALLED = "stalled"


# Default values
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_BACKOFF_MS = 2_000
DEFAULT_MAX_BACKOFF_MS = 30_000
DEFAULT_LEASE_DURATION_MS = 30_000
DEFAULT_RATE_LIMIT_REQUESTS = 1
DEFAULT_RATE_LIMIT_WINDOW_MS = 1_000
PROGRESS_MIN = 0
PROGRESS_MAX = 100
STALLED_LEASE_ERROR = "lease expired"

# Metrics names
METRIC_QUEUE_DEPTH = "job_queue_depth"
METRIC_JOBS_ENQUEUED = "jobs_enqueued_total"
METRIC_JOBS_FINISHED = "jobs_finished_total"
METRIC_JOB_DURATION = "job_duration_seconds"
METRIC_LEASE_EXPIRED = "lease_expired_total"
METRIC_LEASE_ACQUIRED = "lease_acquired_total"
METRIC_LIMITER_ADMISSIONS = "limiter_admissions_total"
METRIC_LIMITER_WAIT = "limiter_wait_seconds"
METRIC_LIMITER_DEGRADED = "limiter_degraded_total"
METRIC_ALERTS_FIRED = "alerts_fired_total"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"
SPAN_LIMITER_ACQUIRE = "limiter_acquire"
