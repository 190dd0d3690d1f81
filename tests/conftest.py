"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncSession

from workgate.channel import EventChannel
from workgate.config import Settings
from workgate.db import Base, Database
from workgate.observability.metrics import MetricsCollector
from workgate.worker.handlers import HandlerRegistry

# Set to a PostgreSQL URL to run the store tests against PostgreSQL
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL (a fresh SQLite file by default)."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings with short timings."""
    return Settings(
        _env_file=None,
        database_url=database_url,
        redis_url=None,
        log_level="DEBUG",
        log_format="console",
        worker_lease_duration_ms=5_000,
        worker_poll_interval_seconds=0.05,
        worker_heartbeat_interval_seconds=0.5,
        worker_shutdown_timeout_ms=1_000,
        base_backoff_ms=1,
        max_backoff_ms=5,
        reaper_interval_seconds=0.1,
        rate_limit_requests=1,
        rate_limit_window_ms=200,
        monitor_interval_seconds=60.0,
        prometheus_port=None,
    )


@pytest_asyncio.fixture
async def database(test_settings: Settings) -> AsyncGenerator[Database, None]:
    """Connected job store with an empty jobs table."""
    db = Database(settings=test_settings)
    await db.connect()
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield db

    await db.close()


@pytest_asyncio.fixture
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for tests."""
    async with database.session() as session:
        yield session


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(CollectorRegistry())


@pytest.fixture
def events() -> EventChannel:
    return EventChannel(maxsize=1_000)


@pytest.fixture
def registry() -> HandlerRegistry:
    """Handler registry with an echo handler and an always-failing handler."""
    handlers = HandlerRegistry()

    @handlers.register("echo")
    async def echo(context):
        return {"echo": context.payload}

    @handlers.register("always_fails")
    async def always_fails(context):
        raise RuntimeError(f"boom on attempt {context.attempt}")

    return handlers


@pytest.fixture
def idempotency_key() -> str:
    """Generate a unique idempotency key."""
    return f"test-{uuid4().hex}"


@pytest.fixture
def sample_job_payload() -> dict[str, Any]:
    """Create a sample job payload."""
    return {"document_id": "doc-123", "pages": 3}
