"""
Worker module.
Contains the job worker and the handler registry.
"""

from workgate.worker.handlers import HandlerRegistry, JobHandler, load_registry
from workgate.worker.main import ProgressReporter, Worker, run

__all__ = [
    "HandlerRegistry",
    "JobHandler",
    "load_registry",
    "ProgressReporter",
    "Worker",
    "run",
]
