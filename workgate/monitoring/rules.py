"""
Alert rules evaluated against metrics snapshots.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from workgate.config import Settings, get_settings
from workgate.constants import AlertSeverity
from workgate.types.monitoring import MetricsSnapshot

Condition = Callable[[MetricsSnapshot], bool]
ValueFunc = Callable[[MetricsSnapshot], float]


@dataclass
class AlertRule:
    """
    A named condition over a MetricsSnapshot.

    `message` may reference `{value}` and `{threshold}`. A rule cannot
    fire again until `cooldown_ms` has passed since `last_triggered_at`.
    """

    name: str
    condition: Condition
    severity: AlertSeverity = AlertSeverity.WARNING
    cooldown_ms: int = 5 * 60 * 1000
    message: str = ""
    value: ValueFunc | None = None
    threshold: float | None = None
    enabled: bool = True
    last_triggered_at: datetime | None = None

    def in_cooldown(self, now: datetime) -> bool:
        if self.last_triggered_at is None:
            return False
        elapsed_ms = (now - self.last_triggered_at).total_seconds() * 1000
        return elapsed_ms < self.cooldown_ms

    def current_value(self, snapshot: MetricsSnapshot) -> float | None:
        if self.value is None:
            return None
        return self.value(snapshot)

    def render(self, current_value: float | None) -> str:
        """
        Format `message` with the current value and threshold.

        Falls back to a generic message when the template cannot be
        filled, e.g. `{value:.0%}` on a manual trigger without a value.
        """
        fallback = f"Alert {self.name} triggered"
        if not self.message:
            return fallback
        try:
            return self.message.format(value=current_value, threshold=self.threshold)
        except (TypeError, ValueError, KeyError, IndexError):
            return fallback


def threshold_rule(
    name: str,
    value: ValueFunc,
    threshold: float,
    message: str,
    severity: AlertSeverity = AlertSeverity.WARNING,
    cooldown_ms: int = 5 * 60 * 1000,
) -> AlertRule:
    """Build a rule that fires when `value(snapshot) > threshold`."""
    return AlertRule(
        name=name,
        condition=lambda snapshot: value(snapshot) > threshold,
        severity=severity,
        cooldown_ms=cooldown_ms,
        message=message,
        value=value,
        threshold=threshold,
    )


def default_rules(settings: Settings | None = None) -> list[AlertRule]:
    """Queue backlog, limiter saturation and error-rate rules from settings."""
    settings = settings or get_settings()
    cooldown_ms = settings.alert_cooldown_ms

    return [
        threshold_rule(
            "queue_backlog",
            lambda s: float(s.total_queue_depth),
            settings.alert_queue_depth_threshold,
            "Queue backlog: {value:.0f} pending jobs (threshold {threshold})",
            cooldown_ms=cooldown_ms,
        ),
        threshold_rule(
            "limiter_saturation",
            lambda s: s.max_limiter_queued_ratio,
            settings.alert_limiter_queued_ratio_threshold,
            "Rate limiter saturated: {value:.0%} of requests queued",
            cooldown_ms=cooldown_ms,
        ),
        threshold_rule(
            "high_error_rate",
            lambda s: s.error_rate,
            settings.alert_error_rate_threshold,
            "High job error rate: {value:.1%} (threshold {threshold:.1%})",
            cooldown_ms=cooldown_ms,
        ),
    ]
