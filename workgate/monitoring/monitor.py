"""
Metrics and alert loop.

Periodically snapshots queue depth, limiter saturation and the job error
rate, then evaluates alert rules against the snapshot. The monitor only
reads state; it never changes jobs or limiter windows.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta

from workgate.channel import EventChannel
from workgate.config import Settings, get_settings
from workgate.constants import AlertSeverity, JobEventType
from workgate.db import Database, JobRepository
from workgate.limiter.limiter import AdmissionLimiter
from workgate.monitoring.rules import AlertRule, default_rules
from workgate.monitoring.sink import AlertSink, MemoryAlertSink
from workgate.observability.metrics import MetricsCollector, get_metrics
from workgate.types.events import JobEvent
from workgate.types.limiter import LimiterMetrics
from workgate.types.monitoring import Alert, AlertStatistics, MetricsSnapshot
from workgate.utils import utcnow

logger = logging.getLogger(__name__)


class Monitor:
    """
    Collects snapshots and fires alerts.

    Sources:
    - queue depth per job type from the job store
    - admission counters from each limiter
    - completed/failed worker events from the event channel
    """

    def __init__(
        self,
        database: Database,
        limiters: Mapping[str, AdmissionLimiter] | None = None,
        sink: AlertSink | None = None,
        settings: Settings | None = None,
        rules: Iterable[AlertRule] | None = None,
        events: EventChannel | None = None,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._database = database
        self._limiters = dict(limiters or {})
        self._settings = settings or get_settings()
        self._sink = sink or MemoryAlertSink(self._settings.alert_history_limit)
        self._rules: dict[str, AlertRule] = {}
        self._events = events
        self._metrics = metrics or get_metrics()
        self._clock = clock

        self.interval = self._settings.monitor_interval_seconds
        self._error_window = timedelta(seconds=self._settings.error_rate_window_seconds)
        # (finished_at, failed) per finished handler attempt
        self._finished: deque[tuple[datetime, bool]] = deque()
        self._known_job_types: set[str] = set()
        # Latest unresolved alert per rule
        self._active: dict[str, Alert] = {}

        self._stop_event = asyncio.Event()
        self._loop_task: asyncio.Task[None] | None = None
        self._consumer_task: asyncio.Task[None] | None = None

        for rule in default_rules(self._settings) if rules is None else rules:
            self.add_rule(rule)

    @property
    def rules(self) -> list[AlertRule]:
        return list(self._rules.values())

    def add_rule(self, rule: AlertRule) -> None:
        """Add or replace a rule by name."""
        self._rules[rule.name] = rule

    def track_limiter(self, name: str, limiter: AdmissionLimiter) -> None:
        """Include a limiter's counters in future snapshots."""
        self._limiters[name] = limiter

    def observe(self, event: JobEvent) -> None:
        """Feed one worker event into the error-rate window."""
        if event.is_finished_attempt:
            self._finished.append((event.timestamp, event.event_type == JobEventType.FAILED))

    def _error_rate(self, now: datetime) -> tuple[float, int]:
        cutoff = now - self._error_window
        while self._finished and self._finished[0][0] < cutoff:
            self._finished.popleft()

        total = len(self._finished)
        if total == 0:
            return 0.0, 0
        failed = sum(1 for _, is_failure in self._finished if is_failure)
        return failed / total, total

    async def collect(self) -> MetricsSnapshot:
        """Build a snapshot of the current queue and limiter state."""
        if self._events is not None:
            for event in self._events.drain():
                self.observe(event)

        now = self._clock()

        queue_depth: dict[str, int] = {}
        try:
            async with self._database.session() as session:
                queue_depth = await JobRepository(session, self._settings).get_queue_depth()
        except Exception:
            logger.exception("Failed to read queue depth")

        # Types that drained to zero drop out of the GROUP BY
        for job_type in self._known_job_types - queue_depth.keys():
            self._metrics.update_queue_depth(job_type, 0)
        for job_type, depth in queue_depth.items():
            self._metrics.update_queue_depth(job_type, depth)
        self._known_job_types |= queue_depth.keys()

        limiters: dict[str, LimiterMetrics] = {}
        for name, limiter in self._limiters.items():
            try:
                limiters[name] = await limiter.get_metrics()
            except Exception:
                logger.exception("Failed to read limiter metrics", extra={"limiter": name})

        error_rate, finished = self._error_rate(now)
        return MetricsSnapshot(
            timestamp=now,
            queue_depth=queue_depth,
            limiters=limiters,
            error_rate=error_rate,
            finished_in_window=finished,
        )

    async def evaluate(self, snapshot: MetricsSnapshot) -> list[Alert]:
        """
        Evaluate every enabled rule against `snapshot`.

        Returns:
            The alerts fired by this evaluation.
        """
        fired = []
        for rule in self.rules:
            if not rule.enabled:
                continue
            try:
                triggered = rule.condition(snapshot)
                current_value = rule.current_value(snapshot) if triggered else None
            except Exception:
                logger.exception("Alert rule evaluation failed", extra={"rule": rule.name})
                continue

            if not triggered:
                continue
            alert = await self._fire(rule, rule.render(current_value), current_value)
            if alert is not None:
                fired.append(alert)
        return fired

    async def _fire(
        self,
        rule: AlertRule,
        message: str,
        current_value: float | None,
    ) -> Alert | None:
        now = self._clock()
        if rule.in_cooldown(now):
            logger.debug("Alert suppressed by cooldown", extra={"rule": rule.name})
            return None

        alert = Alert(
            name=rule.name,
            severity=rule.severity,
            message=message,
            current_value=current_value,
            threshold=rule.threshold,
            timestamp=now,
        )
        rule.last_triggered_at = now
        self._active[rule.name] = alert

        try:
            await self._sink.record(alert)
        except Exception:
            logger.exception("Failed to store alert", extra={"rule": rule.name})

        self._metrics.record_alert(rule.name, rule.severity.value)
        logger.warning(
            f"Alert triggered: {message}",
            extra={
                "alert": rule.name,
                "severity": rule.severity.value,
                "current_value": current_value,
                "threshold": rule.threshold,
            },
        )
        return alert

    async def run_once(self) -> list[Alert]:
        """Collect one snapshot and evaluate the rules against it."""
        return await self.evaluate(await self.collect())

    async def trigger(
        self,
        name: str,
        message: str | None = None,
        value: float | None = None,
    ) -> Alert | None:
        """
        Fire a rule manually, respecting its cooldown.

        Returns:
            The alert, or None if the rule is unknown or cooling down.
        """
        rule = self._rules.get(name)
        if rule is None:
            logger.warning("Unknown alert rule", extra={"rule": name})
            return None
        return await self._fire(rule, message or rule.render(value), value)

    async def recent_alerts(self, limit: int | None = None) -> list[Alert]:
        """Stored alerts, newest first."""
        return await self._sink.recent(limit)

    def active_alerts(self) -> list[Alert]:
        """Unresolved alerts, newest first; at most one per rule."""
        return sorted(self._active.values(), key=lambda a: a.timestamp, reverse=True)

    async def resolve_alert(self, name: str) -> Alert | None:
        """
        Mark the active alert of rule `name` resolved.

        The rule's cooldown is unaffected. Returns the resolved alert, or
        None if the rule has no active alert.
        """
        alert = self._active.pop(name, None)
        if alert is None:
            return None

        alert.resolved = True
        alert.resolved_at = self._clock()
        try:
            await self._sink.update(alert)
        except Exception:
            logger.exception("Failed to store alert resolution", extra={"rule": name})

        logger.info(
            f"Alert resolved: {name}",
            extra={"alert": name, "duration_seconds": alert.resolution_seconds},
        )
        return alert

    async def alert_statistics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> AlertStatistics:
        """Count stored alerts fired within [start, end] by severity and rule."""
        alerts = [
            a
            for a in await self._sink.recent()
            if (start is None or a.timestamp >= start) and (end is None or a.timestamp <= end)
        ]
        by_severity: dict[AlertSeverity, int] = {}
        by_rule: dict[str, int] = {}
        for alert in alerts:
            by_severity[alert.severity] = by_severity.get(alert.severity, 0) + 1
            by_rule[alert.name] = by_rule.get(alert.name, 0) + 1

        durations = [a.resolution_seconds for a in alerts if a.resolution_seconds is not None]
        return AlertStatistics(
            total=len(alerts),
            by_severity=by_severity,
            by_rule=by_rule,
            resolved=len(durations),
            average_resolution_seconds=sum(durations) / len(durations) if durations else 0.0,
        )

    async def clear_alerts(self) -> None:
        """Empty the alert history, drop active alerts and reset every rule's cooldown."""
        await self._sink.clear()
        self._active.clear()
        for rule in self._rules.values():
            rule.last_triggered_at = None
        logger.info("Alerts cleared")

    async def start(self) -> None:
        """Start the periodic loop and the event consumer."""
        if self._loop_task is not None:
            return
        logger.info(f"Monitor starting with interval {self.interval}s")
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run_loop())
        if self._events is not None:
            self._consumer_task = asyncio.create_task(self._consume_events())

    async def stop(self) -> None:
        """Stop the loop and the event consumer."""
        self._stop_event.set()
        tasks = [t for t in (self._loop_task, self._consumer_task) if t is not None]
        if self._consumer_task is not None:
            self._consumer_task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        self._consumer_task = None
        logger.info("Monitor stopped")

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in monitor loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def _consume_events(self) -> None:
        while True:
            self.observe(await self._events.get())
