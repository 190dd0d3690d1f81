"""
Database module.
Contains database connection, models, and repository implementations.
"""

from workgate.db.connection import Database, create_engine_for
from workgate.db.models import Base, Job
from workgate.db.repository import JobRepository

__all__ = [
    "Database",
    "create_engine_for",
    "Job",
    "Base",
    "JobRepository",
]
