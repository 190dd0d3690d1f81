"""
Job handler registry.

Job handlers must be idempotent - they may be executed multiple times
for the same job in case of worker crashes or lease expiry.
"""

import importlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from workgate.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# A handler returns a JobResult, a plain output dict, or None
JobHandler = Callable[[JobContext], Awaitable[JobResult | dict[str, Any] | None]]


class HandlerRegistry:
    """
    Maps job types to handler coroutines.

    Example:
        registry = HandlerRegistry()

        @registry.register("convert_document")
        async def convert(context: JobContext) -> JobResult:
            await context.report_progress(50)
            ...
    """

    def __init__(self) -> None:
        self._handlers: dict[str, JobHandler] = {}

    def register(self, job_type: str) -> Callable[[JobHandler], JobHandler]:
        """
        Decorator to register a job handler.

        Args:
            job_type: The job type this handler processes.

        Returns:
            Decorator function.
        """

        def decorator(handler: JobHandler) -> JobHandler:
            self.add(job_type, handler)
            return handler

        return decorator

    def add(self, job_type: str, handler: JobHandler) -> None:
        """Register `handler` for `job_type`, replacing any previous one."""
        if job_type in self._handlers:
            logger.warning(f"Replacing handler for job type: {job_type}")
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    def get(self, job_type: str) -> JobHandler | None:
        """
        Get the handler for a job type.

        Args:
            job_type: The job type.

        Returns:
            The handler function or None if not found.
        """
        return self._handlers.get(job_type)

    @property
    def job_types(self) -> list[str]:
        """List all registered job types."""
        return list(self._handlers)

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)


def load_registry(module_path: str) -> HandlerRegistry:
    """
    Import the handler registry exposed by a module.

    The module must define a module-level `registry` HandlerRegistry.

    Args:
        module_path: Dotted module path, e.g. "myapp.jobs".

    Returns:
        The module's registry.

    Raises:
        ImportError: If the module cannot be imported.
        TypeError: If the module has no HandlerRegistry named `registry`.
    """
    module = importlib.import_module(module_path)
    registry = getattr(module, "registry", None)
    if not isinstance(registry, HandlerRegistry):
        raise TypeError(f"{module_path} does not expose a HandlerRegistry named 'registry'")

    logger.info(
        "Loaded job handlers",
        extra={"module": module_path, "job_types": registry.job_types},
    )
    return registry
