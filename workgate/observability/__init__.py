"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from workgate.observability.logging import bind_context, setup_logging
from workgate.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from workgate.observability.tracing import (
    get_tracer,
    instrument_sqlalchemy,
    setup_tracing,
    shutdown_tracing,
)

__all__ = [
    "setup_logging",
    "bind_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "shutdown_tracing",
    "get_tracer",
    "instrument_sqlalchemy",
]
