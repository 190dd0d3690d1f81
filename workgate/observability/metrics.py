"""
Prometheus metrics collection.
"""

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
)

from workgate.constants import (
    METRIC_ALERTS_FIRED,
    METRIC_JOB_DURATION,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASE_ACQUIRED,
    METRIC_LEASE_EXPIRED,
    METRIC_LIMITER_ADMISSIONS,
    METRIC_LIMITER_DEGRADED,
    METRIC_LIMITER_WAIT,
    METRIC_QUEUE_DEPTH,
)

# Collector bound to the default process registry
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the work ingestion core.

    Collects metrics for:
    - Queue depth per job type
    - Job enqueues and finished attempts
    - Job execution duration
    - Lease operations
    - Limiter admissions and degraded-mode grants
    - Fired alerts
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of pending jobs",
            ["job_type"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs enqueued",
            ["job_type"],
            registry=self._registry,
        )

        # status is completed, retry or failed
        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of finished job attempts",
            ["job_type", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Job execution duration in seconds",
            ["job_type", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of expired leases",
            ["job_type"],
            registry=self._registry,
        )

        self.lease_acquired = Counter(
            METRIC_LEASE_ACQUIRED,
            "Total number of leases acquired",
            ["worker_id"],
            registry=self._registry,
        )

        self.limiter_admissions = Counter(
            METRIC_LIMITER_ADMISSIONS,
            "Total number of limiter admissions",
            ["service", "outcome"],
            registry=self._registry,
        )

        self.limiter_wait = Histogram(
            METRIC_LIMITER_WAIT,
            "Time callers spent queued in the limiter",
            ["service"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self._registry,
        )

        self.limiter_degraded = Counter(
            METRIC_LIMITER_DEGRADED,
            "Admissions granted while the limiter store was unavailable",
            ["service"],
            registry=self._registry,
        )

        self.alerts_fired = Counter(
            METRIC_ALERTS_FIRED,
            "Total number of alerts fired",
            ["name", "severity"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_job_enqueued(self, job_type: str) -> None:
        """Record a newly stored job."""
        self.jobs_enqueued.labels(job_type=job_type).inc()

    def record_job_finished(
        self,
        job_type: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the end of a handler attempt."""
        self.jobs_finished.labels(job_type=job_type, status=status).inc()
        self.job_duration.labels(job_type=job_type, status=status).observe(
            duration_seconds
        )

    def record_lease_expired(self, job_type: str) -> None:
        """Record an expired lease."""
        self.lease_expired.labels(job_type=job_type).inc()

    def record_lease_acquired(self, worker_id: str, count: int = 1) -> None:
        """Record lease acquisition."""
        self.lease_acquired.labels(worker_id=worker_id).inc(count)

    def update_queue_depth(self, job_type: str, depth: int) -> None:
        """Update queue depth for a job type."""
        self.queue_depth.labels(job_type=job_type).set(depth)

    def record_admission(
        self,
        service: str,
        outcome: str,
        waited_seconds: float = 0.0,
    ) -> None:
        """Record a limiter grant."""
        self.limiter_admissions.labels(service=service, outcome=outcome).inc()
        self.limiter_wait.labels(service=service).observe(waited_seconds)

    def record_limiter_degraded(self, service: str) -> None:
        """Record a fail-open grant."""
        self.limiter_degraded.labels(service=service).inc()

    def record_alert(self, name: str, severity: str) -> None:
        """Record a fired alert."""
        self.alerts_fired.labels(name=name, severity=severity).inc()


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector on the default registry.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics

def get_metrics() -> MetricsCollector:
    """
    Get the default-registry metrics collector, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
