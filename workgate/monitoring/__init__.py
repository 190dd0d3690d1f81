"""
Monitoring module.
Metrics snapshots, alert rules and alert sinks.
"""

from workgate.monitoring.monitor import Monitor
from workgate.monitoring.rules import AlertRule, default_rules, threshold_rule
from workgate.monitoring.sink import AlertSink, MemoryAlertSink, RedisAlertSink

__all__ = [
    "Monitor",
    "AlertRule",
    "default_rules",
    "threshold_rule",
    "AlertSink",
    "MemoryAlertSink",
    "RedisAlertSink",
]
