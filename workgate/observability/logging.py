"""
Structured logging for workgate processes.

Every module logs through `logging.getLogger(__name__)` with `extra={...}`
fields. `setup_logging()` installs a single root handler whose structlog
ProcessorFormatter turns those records into JSON lines (or a colored
console view), stamped with the emitting component (`worker`, `limiter`,
`monitoring`, ...), the bound worker context and the active trace.
"""

import logging
import sys
from typing import Any

import structlog
from opentelemetry import trace

from workgate.config import Settings, get_settings

LOG_FORMATS = ("json", "console")

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "aiosqlite", "redis")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Add the current OpenTelemetry trace and span ids, if any."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def add_component(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Derive `component` from a `workgate.<component>...` logger name."""
    parts = event_dict.get("logger", "").split(".")
    if len(parts) > 1 and parts[0] == "workgate":
        event_dict["component"] = parts[1]
    return event_dict


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structured logging for the process.

    Raises:
        ValueError: If `log_format` is neither "json" nor "console".
    """
    settings = settings or get_settings()
    if settings.log_format not in LOG_FORMATS:
        raise ValueError(f"Unknown log_format {settings.log_format!r}; expected one of {LOG_FORMATS}")
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_component,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
        add_trace_context,
    ]

    renderer: Any
    if settings.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))


def bind_context(**kwargs: Any) -> None:
    """
    Attach fields to every record logged from the current task.

    Worker slots bind `worker_id` and `slot`; asyncio copies the context
    into each task so slots never see each other's fields.
    """
    structlog.contextvars.bind_contextvars(**kwargs)
