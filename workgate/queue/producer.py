"""
Job queue producer.

Called from webhook handlers and background converters to hand work to
the job store. Enqueue is idempotent per (job_type, idempotency_key).
"""

import logging
from collections.abc import Sequence
from typing import Any
from uuid import UUID

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from workgate.config import Settings, get_settings
from workgate.constants import SPAN_ENQUEUE_JOB, JobStatus
from workgate.db import Database, Job, JobRepository
from workgate.exceptions import InvalidJobError, StoreUnavailable
from workgate.observability.metrics import MetricsCollector, get_metrics
from workgate.observability.tracing import get_tracer

logger = logging.getLogger(__name__)

# Errors meaning the job store could not be reached
STORE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


class JobProducer:
    """
    Enqueues jobs into the job store.

    Holds no in-process state besides its collaborators; any number of
    producers may share one Database.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._database = database
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()

    async def enqueue(
        self,
        job_type: str,
        idempotency_key: str,
        payload: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> UUID:
        """
        Enqueue a job unless an active job with the same key exists.

        Concurrent callers with the same (job_type, idempotency_key) all
        receive the id of the single stored job.

        Args:
            job_type: Handler type for the job.
            idempotency_key: Stable key identifying this unit of work.
            payload: JSON-serializable job payload.
            max_attempts: Attempts before the job is marked failed.

        Returns:
            The job id (new or existing).

        Raises:
            InvalidJobError: If the type, key or max_attempts is invalid.
            StoreUnavailable: If the job store cannot be reached.
        """
        if not job_type or not job_type.strip():
            raise InvalidJobError("job_type must be a non-empty string")
        if not idempotency_key or not idempotency_key.strip():
            raise InvalidJobError(
                "idempotency_key must be a non-empty string",
                details={"job_type": job_type},
            )
        if max_attempts is not None and max_attempts < 1:
            raise InvalidJobError(
                "max_attempts must be at least 1",
                details={"job_type": job_type, "max_attempts": max_attempts},
            )

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("job_type", job_type)
            span.set_attribute("idempotency_key", idempotency_key)

            try:
                async with self._database.session() as session:
                    repo = JobRepository(session, self._settings)
                    job, created = await repo.create_job(
                        job_type=job_type,
                        idempotency_key=idempotency_key,
                        payload=payload or {},
                        max_attempts=max_attempts,
                    )
            except STORE_ERRORS as e:
                logger.exception(
                    "Job store unavailable during enqueue",
                    extra={"job_type": job_type, "idempotency_key": idempotency_key},
                )
                raise StoreUnavailable(
                    "Job store unavailable",
                    details={"job_type": job_type, "error": str(e)},
                ) from e

            span.set_attribute("job_id", str(job.id))
            span.set_attribute("created", created)

        if created:
            self._metrics.record_job_enqueued(job_type)
        return job.id

    async def get_job(self, job_id: UUID) -> Job | None:
        """Get a job by id."""
        async with self._database.session() as session:
            return await JobRepository(session, self._settings).get_job(job_id)

    async def list_jobs(
        self,
        job_type: str | None = None,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """List jobs newest first, with the total count for the filter."""
        async with self._database.session() as session:
            repo = JobRepository(session, self._settings)
            return await repo.list_jobs(
                job_type=job_type,
                status=status,
                limit=limit,
                offset=offset,
            )

    async def queue_depth(self) -> dict[str, int]:
        """Pending jobs per job type."""
        async with self._database.session() as session:
            return await JobRepository(session, self._settings).get_queue_depth()

    async def job_stats(self, job_type: str | None = None) -> dict[str, int]:
        """Job counts per status."""
        async with self._database.session() as session:
            return await JobRepository(session, self._settings).get_job_stats(job_type)
