"""
Job repository for database operations.
Implements the core data access patterns for job management.
"""

import logging
from collections.abc import Sequence
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from workgate.config import Settings, get_settings
from workgate.constants import (
    ACTIVE_STATUSES,
    PROGRESS_MAX,
    STALLED_LEASE_ERROR,
    JobStatus,
)
from workgate.db.models import Job
from workgate.retry import compute_backoff_ms
from workgate.utils import after_ms, utcnow

logger = logging.getLogger(__name__)

# Insert attempts when the active job turns terminal between statements
_ENQUEUE_RACE_RETRIES = 3


class JobRepository:
    """
    Repository for job database operations.

    Every state transition is a single conditional UPDATE so concurrent
    workers cannot lose each other's writes:
    - Job submission with idempotency (insert-or-ignore on the active key)
    - Lease acquisition (FOR UPDATE SKIP LOCKED on PostgreSQL)
    - Ack/nack/progress/heartbeat guarded by lease ownership
    - Stalled lease recovery
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
            settings: Settings supplying lease and backoff defaults.
        """
        self._session = session
        self._settings = settings or get_settings()

    def _insert(self) -> Any:
        dialect = self._session.bind.dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise RuntimeError(f"Unsupported job store dialect: {dialect}")

    async def create_job(
        self,
        job_type: str,
        idempotency_key: str,
        payload: dict[str, Any],
        max_attempts: int | None = None,
    ) -> tuple[Job, bool]:
        """
        Create a new job unless an active one exists for the same key.

        Uses INSERT ... ON CONFLICT DO NOTHING against the partial unique
        index on (type, idempotency_key) for pending/processing jobs.

        Args:
            job_type: The job type.
            idempotency_key: Caller-supplied stable key.
            payload: The job payload.
            max_attempts: Maximum attempts before the job fails.

        Returns:
            Tuple of (Job, created) where created is True if new job was created.
        """
        if max_attempts is None:
            max_attempts = self._settings.default_max_attempts
        insert = self._insert()

        for _ in range(_ENQUEUE_RACE_RETRIES):
            now = utcnow()
            stmt = (
                insert(Job)
                .values(
                    id=uuid4(),
                    type=job_type,
                    idempotency_key=idempotency_key,
                    payload=payload,
                    status=JobStatus.PENDING,
                    attempts=0,
                    max_attempts=max_attempts,
                    available_at=now,
                    progress=0,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing()
                .returning(Job.id)
            )
            result = await self._session.execute(stmt)
            job_id = result.scalar_one_or_none()

            if job_id is not None:
                job = await self.get_job(job_id)
                logger.info(
                    "Created new job",
                    extra={"job_id": str(job_id), "job_type": job_type},
                )
                return job, True

            existing = await self.get_active_job(job_type, idempotency_key)
            if existing is not None:
                logger.info(
                    "Returned existing job (idempotent)",
                    extra={"job_id": str(existing.id), "job_type": job_type},
                )
                return existing, False

        raise RuntimeError(
            f"Could not enqueue {job_type}/{idempotency_key}: active job kept changing"
        )

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_active_job(self, job_type: str, idempotency_key: str) -> Job | None:
        """
        Get the pending or processing job for a type and idempotency key.

        Args:
            job_type: The job type.
            idempotency_key: The idempotency key.

        Returns:
            The Job or None if no active job exists.
        """
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.type == job_type,
                    Job.idempotency_key == idempotency_key,
                    Job.status.in_(list(ACTIVE_STATUSES)),
                )
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        job_type: str | None = None,
        status: JobStatus | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering, newest first.

        Args:
            job_type: Optional job type filter.
            status: Optional status filter.
            limit: Maximum number of jobs to return.
            offset: Offset for pagination.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if job_type is not None:
            filters.append(Job.type == job_type)
        if status is not None:
            filters.append(Job.status == status)

        count_stmt = select(func.count()).select_from(Job).where(*filters)
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(Job)
            .where(*filters)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def acquire_lease(
        self,
        worker_id: str,
        job_types: Sequence[str] | None = None,
        lease_duration_ms: int | None = None,
    ) -> Job | None:
        """
        Lease the oldest available pending job.

        A single conditional UPDATE moves the job to PROCESSING, so no
        two workers can lease the same job. On PostgreSQL the candidate
        row is picked with FOR UPDATE SKIP LOCKED to avoid contention.

        Args:
            worker_id: The worker identifier.
            job_types: Optional job types this worker can handle.
            lease_duration_ms: Lease length. Defaults to settings.

        Returns:
            The leased Job or None if nothing is available.
        """
        if lease_duration_ms is None:
            lease_duration_ms = self._settings.worker_lease_duration_ms

        now = utcnow()
        candidate = aliased(Job)
        candidate_stmt = select(candidate.id).where(
            candidate.status == JobStatus.PENDING,
            candidate.available_at <= now,
        )
        if job_types:
            candidate_stmt = candidate_stmt.where(candidate.type.in_(job_types))
        candidate_id = (
            candidate_stmt.order_by(candidate.available_at, candidate.created_at)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )

        stmt = (
            update(Job)
            .where(Job.id == candidate_id, Job.status == JobStatus.PENDING)
            .values(
                status=JobStatus.PROCESSING,
                lease_owner=worker_id,
                lease_expires_at=after_ms(lease_duration_ms, now),
                updated_at=now,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        job_id = result.scalar_one_or_none()
        if job_id is None:
            return None

        logger.info(
            "Acquired lease on job",
            extra={"job_id": str(job_id), "worker_id": worker_id},
        )
        return await self.get_job(job_id)

    async def complete_job(
        self,
        job_id: UUID,
        worker_id: str,
        result: dict[str, Any] | None = None,
    ) -> Job | None:
        """
        Ack: mark a leased job as completed.

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must own the lease).
            result: Optional handler output.

        Returns:
            Updated Job or None if the worker no longer owns the lease.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.PROCESSING,
                Job.lease_owner == worker_id,
            )
            .values(
                status=JobStatus.COMPLETED,
                progress=PROGRESS_MAX,
                completed_at=now,
                updated_at=now,
                lease_owner=None,
                lease_expires_at=None,
                result=result,
            )
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        updated = (await self._session.execute(stmt)).scalar_one_or_none()
        if updated is None:
            logger.warning(
                "Ack ignored: worker no longer owns lease",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
            return None

        logger.info("Job completed successfully", extra={"job_id": str(job_id)})
        return await self.get_job(job_id)

    async def fail_job(
        self,
        job_id: UUID,
        worker_id: str,
        error: str,
    ) -> Job | None:
        """
        Nack: record a failed attempt and either schedule a retry or fail the job.

        attempts is incremented; with attempts left the job returns to
        PENDING after an exponential backoff delay, otherwise it becomes
        FAILED (terminal).

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier (must own the lease).
            error: Error message recorded as last_error.

        Returns:
            Updated Job or None if the worker no longer owns the lease.
        """
        job = await self.get_job(job_id)
        if job is None:
            return None

        if job.status != JobStatus.PROCESSING or job.lease_owner != worker_id:
            logger.warning(
                "Nack ignored: worker no longer owns lease",
                extra={"job_id": str(job_id), "worker_id": worker_id},
            )
            return None

        now = utcnow()
        attempts = job.attempts + 1
        values: dict[str, Any] = {
            "attempts": attempts,
            "last_error": error,
            "updated_at": now,
            "lease_owner": None,
            "lease_expires_at": None,
        }

        if attempts >= job.max_attempts:
            values["status"] = JobStatus.FAILED
            values["completed_at"] = now
            logger.warning(
                f"Job failed after {attempts} attempts",
                extra={"job_id": str(job_id), "error": error},
            )
        else:
            delay_ms = compute_backoff_ms(
                attempts,
                self._settings.base_backoff_ms,
                self._settings.max_backoff_ms,
            )
            values["status"] = JobStatus.PENDING
            values["available_at"] = after_ms(delay_ms, now)
            logger.info(
                "Job queued for retry",
                extra={"job_id": str(job_id), "attempts": attempts, "delay_ms": delay_ms},
            )

        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.PROCESSING,
                Job.lease_owner == worker_id,
                Job.attempts == job.attempts,
            )
            .values(**values)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        updated = (await self._session.execute(stmt)).scalar_one_or_none()
        if updated is None:
            return None
        return await self.get_job(job_id)

    async def update_progress(
        self,
        job_id: UUID,
        worker_id: str,
        progress: int,
    ) -> bool:
        """
        Move a job's progress forward.

        Only applies while the worker owns the lease and the new value is
        higher than the stored one.

        Returns:
            True if the stored progress changed.
        """
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.PROCESSING,
                Job.lease_owner == worker_id,
                Job.progress < progress,
            )
            .values(progress=progress, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def extend_lease(
        self,
        job_id: UUID,
        worker_id: str,
        extension_ms: int | None = None,
    ) -> bool:
        """
        Extend the lease on a job (heartbeat).

        Args:
            job_id: The job UUID.
            worker_id: The worker identifier.
            extension_ms: Lease extension from now. Defaults to the lease duration.

        Returns:
            True if lease was extended, False otherwise.
        """
        if extension_ms is None:
            extension_ms = self._settings.worker_lease_duration_ms

        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.lease_owner == worker_id,
                Job.status == JobStatus.PROCESSING,
            )
            .values(lease_expires_at=after_ms(extension_ms, now), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def recover_stalled_jobs(self) -> list[Job]:
        """
        Recover jobs whose lease expired without an ack or nack.

        Called by the reaper to handle worker crashes. The lost attempt
        counts toward attempts: jobs with attempts left go back to
        PENDING, the rest become FAILED.

        Returns:
            The recovered jobs in their new state.
        """
        now = utcnow()
        expired = (
            Job.status == JobStatus.PROCESSING,
            Job.lease_expires_at < now,
        )
        common = {
            "attempts": Job.attempts + 1,
            "last_error": STALLED_LEASE_ERROR,
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_at": now,
        }

        exhausted_stmt = (
            update(Job)
            .where(*expired, Job.attempts + 1 >= Job.max_attempts)
            .values(status=JobStatus.FAILED, completed_at=now, **common)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )
        requeue_stmt = (
            update(Job)
            .where(*expired, Job.attempts + 1 < Job.max_attempts)
            .values(status=JobStatus.PENDING, available_at=now, **common)
            .returning(Job.id)
            .execution_options(synchronize_session=False)
        )

        job_ids = list((await self._session.execute(exhausted_stmt)).scalars().all())
        job_ids += (await self._session.execute(requeue_stmt)).scalars().all()
        if not job_ids:
            return []

        logger.info(f"Recovered {len(job_ids)} jobs with expired leases")

        stmt = (
            select(Job)
            .where(Job.id.in_(job_ids))
            .execution_options(populate_existing=True)
        )
        return list((await self._session.execute(stmt)).scalars().all())

    async def get_queue_depth(self) -> dict[str, int]:
        """
        Get the number of pending jobs per job type.

        Returns:
            Dictionary of job type -> pending count.
        """
        stmt = (
            select(Job.type, func.count())
            .where(Job.status == JobStatus.PENDING)
            .group_by(Job.type)
        )
        result = await self._session.execute(stmt)
        return {job_type: count for job_type, count in result.all()}

    async def get_job_stats(self, job_type: str | None = None) -> dict[str, int]:
        """
        Get job statistics by status.

        Args:
            job_type: Optional job type filter.

        Returns:
            Dictionary of status -> count.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if job_type is not None:
            stmt = stmt.where(Job.type == job_type)

        result = await self._session.execute(stmt)
        return {status.value: count for status, count in result.all()}
