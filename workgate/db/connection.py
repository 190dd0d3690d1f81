"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from workgate.config import Settings, get_settings
from workgate.db.models import Base

logger = logging.getLogger(__name__)


def create_engine_for(url: str, settings: Settings | None = None) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite databases get a NullPool so every session opens its own
    connection; other backends use a sized connection pool.

    Args:
        url: The database URL.
        settings: Settings providing pool sizes.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = settings or get_settings()
    if url.startswith("sqlite"):
        return create_async_engine(url, poolclass=NullPool, echo=False)

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )


class Database:
    """
    Owns the engine and session factory for the job store.

    Created once by the runtime and passed to the producer, worker,
    reaper and monitor.
    """

    def __init__(self, url: str | None = None, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self.url = url or self._settings.database_url
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call connect() first.")
        return self._engine

    async def connect(self) -> None:
        """
        Initialize the engine and session factory.
        Should be called on application startup.
        """
        if self._engine is not None:
            return
        self._engine = create_engine_for(self.url, self._settings)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        logger.info("Database connection initialized")

    async def create_tables(self) -> None:
        """Create the job tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        """Check connectivity with `SELECT 1`."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
        except Exception:
            logger.exception("Database health check failed")
            return False
        return True

    async def close(self) -> None:
        """
        Close the database connection.
        Should be called on application shutdown.
        """
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for getting async database sessions.
        Commits on success and rolls back on error.

        Yields:
            AsyncSession: An async database session.
        """
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call connect() first.")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
