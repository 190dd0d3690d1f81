"""
Monitoring and alerting type definitions.
"""

from datetime import datetime
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from workgate.constants import AlertSeverity, ComponentStatus, HealthState
from workgate.types.limiter import LimiterMetrics


class MetricsSnapshot(BaseModel):
    """
    Point-in-time view of queue and limiter state.
    Evaluated by alert rules on every monitor tick.
    """

    timestamp: datetime
    queue_depth: dict[str, int] = Field(default_factory=dict)
    limiters: dict[str, LimiterMetrics] = Field(default_factory=dict)
    error_rate: float = 0.0
    finished_in_window: int = 0

    @property
    def total_queue_depth(self) -> int:
        return sum(self.queue_depth.values())

    @property
    def max_limiter_queued_ratio(self) -> float:
        if not self.limiters:
            return 0.0
        return max(m.queued_ratio for m in self.limiters.values())


class Alert(BaseModel):
    """A fired alert as stored in the alert sink."""

    id: UUID = Field(default_factory=uuid4)
    name: str
    severity: AlertSeverity
    message: str
    current_value: float | None = None
    threshold: float | None = None
    timestamp: datetime
    resolved: bool = False
    resolved_at: datetime | None = None

    @property
    def resolution_seconds(self) -> float | None:
        if self.resolved_at is None:
            return None
        return (self.resolved_at - self.timestamp).total_seconds()


class AlertStatistics(BaseModel):
    """Alert counts over a time range of the stored history."""

    total: int = 0
    by_severity: dict[AlertSeverity, int] = Field(default_factory=dict)
    by_rule: dict[str, int] = Field(default_factory=dict)
    resolved: int = 0
    average_resolution_seconds: float = 0.0


class HealthStatus(BaseModel):
    """
    Reachability of the runtime's dependencies.

    `services` maps a dependency name to up/down/degraded; the overall
    `status` is unhealthy if any is down, degraded if any is degraded.
    """

    status: HealthState
    timestamp: datetime
    services: dict[str, ComponentStatus]
    queue_depth: dict[str, int] | None = None
