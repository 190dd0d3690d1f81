"""
OpenTelemetry tracing.

Spans: `enqueue_job` (producer), `acquire_lease` and `execute_job`
(worker), `limiter_acquire` (admission limiter). Until `setup_tracing()`
installs a provider, `get_tracer()` hands out the API's no-op tracer, so
instrumented code runs unchanged with tracing off.
"""

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Tracer

from workgate import __version__
from workgate.config import Settings, get_settings

logger = logging.getLogger(__name__)

_provider: TracerProvider | None = None
_tracer: Tracer | None = None


def setup_tracing(settings: Settings | None = None) -> Tracer:
    """
    Install a tracer provider exporting to the OTLP gRPC endpoint.

    Calling it again returns the tracer from the first call.
    """
    global _provider, _tracer
    if _tracer is not None:
        return _tracer

    settings = settings or get_settings()
    _provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        )
    )

    try:
        exporter = OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        _provider.add_span_processor(BatchSpanProcessor(exporter))
    except Exception:
        logger.exception(
            "OTLP exporter unavailable; spans will not be exported",
            extra={"endpoint": settings.otel_exporter_otlp_endpoint},
        )

    trace.set_tracer_provider(_provider)
    _tracer = trace.get_tracer(settings.otel_service_name)
    logger.info("Tracing enabled", extra={"endpoint": settings.otel_exporter_otlp_endpoint})
    return _tracer


def shutdown_tracing() -> None:
    """Flush buffered spans and stop the exporter."""
    global _provider, _tracer
    if _provider is None:
        return
    _provider.shutdown()
    _provider = None
    _tracer = None


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace statements on `engine` (the sync engine behind an AsyncEngine)."""
    SQLAlchemyInstrumentor().instrument(engine=engine)


def get_tracer(name: str = "workgate") -> Tracer:
    if _tracer is not None:
        return _tracer
    return trace.get_tracer(name)
