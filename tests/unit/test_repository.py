"""
Unit tests for the job repository.
"""

from datetime import timedelta
from uuid import uuid4

import pytest_asyncio
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from workgate.config import Settings
from workgate.constants import STALLED_LEASE_ERROR, JobStatus
from workgate.db.models import Job
from workgate.db.repository import JobRepository
from workgate.utils import utcnow


async def _expire_lease(session: AsyncSession, job_id) -> None:
    await session.execute(
        update(Job)
        .where(Job.id == job_id)
        .values(lease_expires_at=utcnow() - timedelta(seconds=1))
    )
    await session.commit()


class TestJobRepository:
    """Tests for JobRepository."""

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession, test_settings: Settings) -> JobRepository:
        """Create a repository instance."""
        return JobRepository(db_session, test_settings)

    async def test_create_job_success(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        idempotency_key: str,
        sample_job_payload: dict,
    ):
        """Test successful job creation."""
        job, created = await repo.create_job(
            job_type="convert_document",
            idempotency_key=idempotency_key,
            payload=sample_job_payload,
            max_attempts=3,
        )
        await db_session.commit()

        assert created is True
        assert job.type == "convert_document"
        assert job.idempotency_key == idempotency_key
        assert job.payload == sample_job_payload
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.progress == 0
        assert job.lease_owner is None

    async def test_create_job_uses_default_max_attempts(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test that max_attempts falls back to settings."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})

        assert job.max_attempts == 3

    async def test_create_job_idempotency(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        idempotency_key: str,
    ):
        """Test that a duplicate key returns the existing active job."""
        job1, created1 = await repo.create_job("convert_document", idempotency_key, {"v": 1})
        await db_session.commit()

        job2, created2 = await repo.create_job("convert_document", idempotency_key, {"v": 2})
        await db_session.commit()

        assert created1 is True
        assert created2 is False
        assert job1.id == job2.id
        assert job2.payload == {"v": 1}

    async def test_same_key_different_job_types(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test that the key is scoped to the job type."""
        job1, created1 = await repo.create_job("convert_document", idempotency_key, {})
        job2, created2 = await repo.create_job("send_webhook", idempotency_key, {})

        assert created1 is True
        assert created2 is True
        assert job1.id != job2.id

    async def test_key_reusable_after_terminal(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        idempotency_key: str,
    ):
        """Test that a completed job frees its key for a new enqueue."""
        job1, _ = await repo.create_job("convert_document", idempotency_key, {})
        await repo.acquire_lease("worker-1")
        await repo.complete_job(job1.id, "worker-1")
        await db_session.commit()

        job2, created = await repo.create_job("convert_document", idempotency_key, {})

        assert created is True
        assert job2.id != job1.id

    async def test_key_still_active_while_processing(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test that a processing job still blocks a duplicate enqueue."""
        job1, _ = await repo.create_job("convert_document", idempotency_key, {})
        await repo.acquire_lease("worker-1")

        job2, created = await repo.create_job("convert_document", idempotency_key, {})

        assert created is False
        assert job2.id == job1.id
        assert job2.status == JobStatus.PROCESSING

    async def test_get_nonexistent_job(self, repo: JobRepository):
        """Test getting a job that doesn't exist."""
        assert await repo.get_job(uuid4()) is None

    async def test_acquire_lease(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        idempotency_key: str,
    ):
        """Test lease acquisition moves the job to processing."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})
        await db_session.commit()

        before = utcnow()
        leased = await repo.acquire_lease("worker-1", lease_duration_ms=10_000)
        await db_session.commit()

        assert leased is not None
        assert leased.id == job.id
        assert leased.status == JobStatus.PROCESSING
        assert leased.lease_owner == "worker-1"
        assert leased.lease_expires_at >= before + timedelta(seconds=9)
        assert leased.attempts == 0

    async def test_acquire_lease_empty_queue(self, repo: JobRepository):
        """Test that leasing from an empty queue returns None."""
        assert await repo.acquire_lease("worker-1") is None

    async def test_acquire_lease_oldest_first(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
    ):
        """Test that the job available earliest is leased first."""
        second, _ = await repo.create_job("convert_document", "key-2", {})
        first, _ = await repo.create_job("convert_document", "key-1", {})
        await db_session.execute(
            update(Job)
            .where(Job.id == first.id)
            .values(available_at=utcnow() - timedelta(seconds=10))
        )

        leased1 = await repo.acquire_lease("worker-1")
        leased2 = await repo.acquire_lease("worker-1")

        assert leased1.id == first.id
        assert leased2.id == second.id
        assert await repo.acquire_lease("worker-1") is None

    async def test_acquire_lease_skips_unavailable(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        idempotency_key: str,
    ):
        """Test that a job in backoff is not leased before available_at."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})
        await db_session.execute(
            update(Job)
            .where(Job.id == job.id)
            .values(available_at=utcnow() + timedelta(minutes=5))
        )

        assert await repo.acquire_lease("worker-1") is None

    async def test_acquire_lease_filters_job_types(self, repo: JobRepository):
        """Test leasing restricted to job types."""
        await repo.create_job("convert_document", "key-1", {})
        webhook, _ = await repo.create_job("send_webhook", "key-2", {})

        leased = await repo.acquire_lease("worker-1", job_types=["send_webhook"])

        assert leased.id == webhook.id

    async def test_complete_job(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test ack stores the result and clears the lease."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})
        await repo.acquire_lease("worker-1")

        completed = await repo.complete_job(job.id, "worker-1", result={"pages": 3})

        assert completed.status == JobStatus.COMPLETED
        assert completed.result == {"pages": 3}
        assert completed.progress == 100
        assert completed.completed_at is not None
        assert completed.lease_owner is None
        assert completed.attempts == 0

    async def test_complete_job_wrong_worker(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test that a worker without the lease cannot ack."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})
        await repo.acquire_lease("worker-1")

        assert await repo.complete_job(job.id, "worker-2") is None

        current = await repo.get_job(job.id)
        assert current.status == JobStatus.PROCESSING
        assert current.lease_owner == "worker-1"

    async def test_fail_job_schedules_retry_with_backoff(
        self,
        db_session: AsyncSession,
        idempotency_key: str,
    ):
        """Test nack with attempts left returns the job to pending after a delay."""
        repo = JobRepository(
            db_session,
            Settings(_env_file=None, base_backoff_ms=2_000, max_backoff_ms=30_000),
        )
        job, _ = await repo.create_job("convert_document", idempotency_key, {}, max_attempts=3)
        await repo.acquire_lease("worker-1")

        before = utcnow()
        failed = await repo.fail_job(job.id, "worker-1", "OCR timeout")

        assert failed.status == JobStatus.PENDING
        assert failed.attempts == 1
        assert failed.last_error == "OCR timeout"
        assert failed.lease_owner is None
        assert failed.available_at >= before + timedelta(milliseconds=2_000)
        assert failed.available_at <= utcnow() + timedelta(milliseconds=2_000)
        assert await repo.acquire_lease("worker-1") is None

    async def test_fail_job_exhausts_attempts(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test nack on the last attempt marks the job failed."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {}, max_attempts=1)
        await repo.acquire_lease("worker-1")

        failed = await repo.fail_job(job.id, "worker-1", "bad input")

        assert failed.status == JobStatus.FAILED
        assert failed.attempts == 1
        assert failed.last_error == "bad input"
        assert failed.completed_at is not None
        assert failed.is_terminal

    async def test_fail_job_wrong_worker(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test that a worker without the lease cannot nack."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})
        await repo.acquire_lease("worker-1")

        assert await repo.fail_job(job.id, "worker-2", "late") is None

        current = await repo.get_job(job.id)
        assert current.attempts == 0
        assert current.last_error is None

    async def test_update_progress_only_moves_forward(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test that stored progress never decreases."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})
        await repo.acquire_lease("worker-1")

        assert await repo.update_progress(job.id, "worker-1", 40) is True
        assert await repo.update_progress(job.id, "worker-1", 20) is False
        assert await repo.update_progress(job.id, "worker-2", 90) is False

        assert (await repo.get_job(job.id)).progress == 40

    async def test_extend_lease(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test heartbeat extension by the owner only."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})
        leased = await repo.acquire_lease("worker-1", lease_duration_ms=1_000)

        assert await repo.extend_lease(job.id, "worker-2", 60_000) is False
        assert await repo.extend_lease(job.id, "worker-1", 60_000) is True

        extended = await repo.get_job(job.id)
        assert extended.lease_expires_at > leased.lease_expires_at

    async def test_recover_stalled_jobs_requeues(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        idempotency_key: str,
    ):
        """Test that an expired lease returns the job to pending and counts the attempt."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {}, max_attempts=3)
        await repo.acquire_lease("worker-1")
        await db_session.commit()
        await _expire_lease(db_session, job.id)

        recovered = await repo.recover_stalled_jobs()

        assert [j.id for j in recovered] == [job.id]
        assert recovered[0].status == JobStatus.PENDING
        assert recovered[0].attempts == 1
        assert recovered[0].last_error == STALLED_LEASE_ERROR
        assert recovered[0].lease_owner is None

    async def test_recover_stalled_jobs_fails_exhausted(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        idempotency_key: str,
    ):
        """Test that a stalled job on its last attempt becomes failed."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {}, max_attempts=1)
        await repo.acquire_lease("worker-1")
        await db_session.commit()
        await _expire_lease(db_session, job.id)

        recovered = await repo.recover_stalled_jobs()

        assert recovered[0].status == JobStatus.FAILED
        assert recovered[0].attempts == 1

    async def test_recover_ignores_live_leases(
        self,
        repo: JobRepository,
        idempotency_key: str,
    ):
        """Test that unexpired leases are left alone."""
        await repo.create_job("convert_document", idempotency_key, {})
        await repo.acquire_lease("worker-1", lease_duration_ms=60_000)

        assert await repo.recover_stalled_jobs() == []

    async def test_late_ack_after_reap_is_dropped(
        self,
        repo: JobRepository,
        db_session: AsyncSession,
        idempotency_key: str,
    ):
        """Test that the original worker cannot ack after its lease was reaped."""
        job, _ = await repo.create_job("convert_document", idempotency_key, {})
        await repo.acquire_lease("worker-1")
        await db_session.commit()
        await _expire_lease(db_session, job.id)
        await repo.recover_stalled_jobs()
        await repo.acquire_lease("worker-2")

        assert await repo.complete_job(job.id, "worker-1") is None
        assert (await repo.get_job(job.id)).lease_owner == "worker-2"

    async def test_queue_depth_and_stats(self, repo: JobRepository):
        """Test pending counts per type and status counts."""
        await repo.create_job("convert_document", "key-1", {})
        await repo.create_job("convert_document", "key-2", {})
        await repo.create_job("send_webhook", "key-3", {})
        await repo.acquire_lease("worker-1", job_types=["send_webhook"])

        assert await repo.get_queue_depth() == {"convert_document": 2}
        assert await repo.get_job_stats() == {"pending": 2, "processing": 1}
        assert await repo.get_job_stats("send_webhook") == {"processing": 1}

    async def test_list_jobs(self, repo: JobRepository):
        """Test listing with filters and totals."""
        await repo.create_job("convert_document", "key-1", {})
        await repo.create_job("convert_document", "key-2", {})
        await repo.create_job("send_webhook", "key-3", {})

        jobs, total = await repo.list_jobs(job_type="convert_document", limit=1)

        assert total == 2
        assert len(jobs) == 1
        assert jobs[0].type == "convert_document"

        _, pending_total = await repo.list_jobs(status=JobStatus.PENDING)
        assert pending_total == 3
