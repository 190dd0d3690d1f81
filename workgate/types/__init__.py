"""
Type definitions for the work ingestion core.
Contains input/output type definitions grouped by module.
"""

from workgate.types.events import JobEvent
from workgate.types.job import (
    JobContext,
    JobResult,
    LeaseInfo,
    ProgressCallback,
    clamp_progress,
)
from workgate.types.limiter import Admission, LimiterMetrics, WindowState
from workgate.types.monitoring import (
    Alert,
    AlertStatistics,
    HealthStatus,
    MetricsSnapshot,
)

__all__ = [
    # Job types
    "JobContext",
    "JobResult",
    "LeaseInfo",
    "ProgressCallback",
    "clamp_progress",
    # Event types
    "JobEvent",
    # Limiter types
    "Admission",
    "LimiterMetrics",
    "WindowState",
    # Monitoring types
    "Alert",
    "AlertStatistics",
    "HealthStatus",
    "MetricsSnapshot",
]
