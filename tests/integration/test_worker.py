"""
Integration tests for worker functionality.
"""

import asyncio
from datetime import timedelta
from uuid import UUID

import pytest
from sqlalchemy import update

from workgate.channel import EventChannel
from workgate.config import Settings
from workgate.constants import STALLED_LEASE_ERROR, JobEventType, JobStatus
from workgate.db import Database, Job, JobRepository
from workgate.exceptions import HandlerFailure
from workgate.observability.metrics import MetricsCollector
from workgate.queue.producer import JobProducer
from workgate.reaper.main import Reaper
from workgate.types.job import JobContext, JobResult
from workgate.utils import utcnow
from workgate.worker.handlers import HandlerRegistry
from workgate.worker.main import Worker


async def wait_for_status(
    producer: JobProducer,
    job_id: UUID,
    statuses: set[JobStatus],
    timeout: float = 5.0,
) -> Job:
    """Poll until the job reaches one of `statuses`."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        job = await producer.get_job(job_id)
        if job.status in statuses:
            return job
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"job {job_id} stuck in {job.status}")
        await asyncio.sleep(0.02)


async def run_until_terminal(worker: Worker, producer: JobProducer, job_id: UUID) -> Job:
    """Drive the worker one lease at a time until the job is terminal."""
    for _ in range(200):
        if not await worker.run_once():
            await asyncio.sleep(0.01)
        job = await producer.get_job(job_id)
        if job.is_terminal:
            return job
    raise AssertionError("job never reached a terminal state")


class TestWorkerIntegration:
    """Integration tests for worker job processing."""

    @pytest.fixture
    def producer(
        self,
        database: Database,
        test_settings: Settings,
        metrics: MetricsCollector,
    ) -> JobProducer:
        return JobProducer(database, test_settings, metrics)

    @pytest.fixture
    def make_worker(
        self,
        database: Database,
        registry: HandlerRegistry,
        test_settings: Settings,
        metrics: MetricsCollector,
        events: EventChannel,
    ):
        def factory(**kwargs) -> Worker:
            kwargs.setdefault("worker_id", "worker-1")
            return Worker(
                database,
                kwargs.pop("registry", registry),
                settings=kwargs.pop("settings", test_settings),
                metrics=metrics,
                events=events,
                **kwargs,
            )

        return factory

    async def test_full_job_lifecycle_success(
        self,
        producer: JobProducer,
        make_worker,
        events: EventChannel,
        sample_job_payload: dict,
    ):
        """Test complete job lifecycle: enqueue -> lease -> run -> ack."""
        job_id = await producer.enqueue("echo", "doc-123", sample_job_payload)
        worker = make_worker()

        assert await worker.run_once() is True

        job = await producer.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"echo": sample_job_payload}
        assert job.attempts == 0
        assert job.progress == 100
        assert [e.event_type for e in events.drain()] == [
            JobEventType.LEASED,
            JobEventType.COMPLETED,
        ]
        assert await worker.run_once() is False

    async def test_concurrent_enqueue_runs_once(
        self,
        producer: JobProducer,
        make_worker,
    ):
        """Concurrent enqueues of one key produce one job that runs once."""
        calls: list[UUID] = []
        registry = HandlerRegistry()

        @registry.register("convert_document")
        async def convert(context: JobContext) -> JobResult:
            calls.append(context.job_id)
            return JobResult(success=True, output={"pages": 3})

        ids = await asyncio.gather(
            *(producer.enqueue("convert_document", "doc-42", {"n": n}) for n in range(10))
        )
        assert len(set(ids)) == 1

        worker = make_worker(registry=registry)
        while await worker.run_once():
            pass

        assert calls == [ids[0]]
        job = await producer.get_job(ids[0])
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"pages": 3}

    async def test_retries_then_fails(
        self,
        producer: JobProducer,
        make_worker,
        events: EventChannel,
    ):
        """A handler that always raises ends failed after max_attempts."""
        job_id = await producer.enqueue("always_fails", "doc-1", {}, max_attempts=3)
        worker = make_worker()

        job = await run_until_terminal(worker, producer, job_id)

        assert job.status == JobStatus.FAILED
        assert job.attempts == 3
        assert job.last_error == "boom on attempt 3"

        failed = [e for e in events.drain() if e.event_type == JobEventType.FAILED]
        assert [e.data["will_retry"] for e in failed] == [True, True, False]
        assert [e.attempts for e in failed] == [1, 2, 3]

    async def test_failed_result_is_retried(self, producer: JobProducer, make_worker):
        """A JobResult with success=False is a failure like an exception."""
        registry = HandlerRegistry()

        @registry.register("validate")
        async def validate(context: JobContext) -> JobResult:
            return JobResult(success=False, error="schema mismatch")

        job_id = await producer.enqueue("validate", "doc-1", {}, max_attempts=2)

        job = await run_until_terminal(make_worker(registry=registry), producer, job_id)

        assert job.status == JobStatus.FAILED
        assert job.attempts == 2
        assert job.last_error == "schema mismatch"

    async def test_handler_failure_records_message(self, producer: JobProducer, make_worker):
        """HandlerFailure is nacked with its message like any exception."""
        registry = HandlerRegistry()

        @registry.register("ocr")
        async def ocr(context: JobContext) -> None:
            raise HandlerFailure("page 3 unreadable", details={"page": 3})

        job_id = await producer.enqueue("ocr", "doc-1", {}, max_attempts=1)
        await make_worker(registry=registry).run_once()

        job = await producer.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert job.last_error == "page 3 unreadable"

    async def test_succeeds_on_retry(self, producer: JobProducer, make_worker):
        """A transient failure is retried and then completes."""
        registry = HandlerRegistry()

        @registry.register("flaky")
        async def flaky(context: JobContext) -> dict:
            if context.attempt < 2:
                raise ConnectionError("upstream reset")
            return {"attempt": context.attempt}

        job_id = await producer.enqueue("flaky", "doc-1", {}, max_attempts=3)

        job = await run_until_terminal(make_worker(registry=registry), producer, job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 1
        assert job.last_error == "upstream reset"
        assert job.result == {"attempt": 2}

    async def test_unknown_job_type(self, producer: JobProducer, make_worker):
        """Jobs without a handler are nacked with a clear error."""
        job_id = await producer.enqueue("mystery", "doc-1", {}, max_attempts=1)

        await make_worker().run_once()

        job = await producer.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.last_error == "No handler registered for job type: mystery"

    async def test_stalled_job_recovered_by_another_worker(
        self,
        database: Database,
        producer: JobProducer,
        make_worker,
        test_settings: Settings,
        metrics: MetricsCollector,
        events: EventChannel,
    ):
        """A crashed worker's job is reaped and completed by another worker."""
        job_id = await producer.enqueue("echo", "doc-1", {"x": 1}, max_attempts=3)

        # Worker A leases the job and dies without acking
        async with database.session() as session:
            leased = await JobRepository(session, test_settings).acquire_lease("worker-a")
            assert leased.id == job_id
            await session.execute(
                update(Job)
                .where(Job.id == job_id)
                .values(lease_expires_at=utcnow() - timedelta(seconds=1))
            )

        reaper = Reaper(database, test_settings, metrics, events)
        assert await reaper.run_once() == 1

        job = await producer.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert job.last_error == STALLED_LEASE_ERROR

        assert await make_worker(worker_id="worker-b").run_once() is True

        job = await producer.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 1

        stalled = [e for e in events.drain() if e.event_type == JobEventType.STALLED]
        assert len(stalled) == 1
        assert metrics.registry.get_sample_value(
            "lease_expired_total", {"job_type": "echo"}
        ) == 1

    async def test_start_runs_reaper_pass(
        self,
        database: Database,
        producer: JobProducer,
        make_worker,
        test_settings: Settings,
        metrics: MetricsCollector,
    ):
        """A starting worker reclaims jobs a previous instance left behind."""
        job_id = await producer.enqueue("echo", "doc-1", {})
        async with database.session() as session:
            await JobRepository(session, test_settings).acquire_lease(
                "previous-instance", lease_duration_ms=1
            )
        await asyncio.sleep(0.01)

        worker = make_worker(reaper=Reaper(database, test_settings, metrics))
        await worker.start()
        try:
            job = await wait_for_status(producer, job_id, {JobStatus.COMPLETED})
        finally:
            await worker.stop()

        assert job.attempts == 1
        assert job.lease_owner is None

    async def test_worker_loop_processes_queue(self, producer: JobProducer, make_worker):
        """The started worker drains the queue with several lease slots."""
        job_ids = [await producer.enqueue("echo", f"doc-{i}", {"i": i}) for i in range(6)]
        worker = make_worker(concurrency=2)

        await worker.start()
        try:
            for job_id in job_ids:
                await wait_for_status(producer, job_id, {JobStatus.COMPLETED})
        finally:
            await worker.stop()

        assert worker.is_running is False

    async def test_concurrency_bounds_in_flight_jobs(self, producer: JobProducer, make_worker):
        """No more than `concurrency` handlers run at once."""
        running = 0
        peak = 0
        registry = HandlerRegistry()

        @registry.register("slow")
        async def slow(context: JobContext) -> None:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.05)
            running -= 1

        job_ids = [await producer.enqueue("slow", f"doc-{i}", {}) for i in range(6)]
        worker = make_worker(registry=registry, concurrency=2)

        await worker.start()
        try:
            for job_id in job_ids:
                await wait_for_status(producer, job_id, {JobStatus.COMPLETED})
        finally:
            await worker.stop()

        assert peak == 2

    async def test_progress_reporting(
        self,
        database: Database,
        producer: JobProducer,
        make_worker,
        test_settings: Settings,
    ):
        """Progress is clamped, monotonic and persisted while the job runs."""
        reported: list[int] = []
        stored: list[int] = []
        registry = HandlerRegistry()

        @registry.register("convert_document")
        async def convert(context: JobContext) -> None:
            reported.append(await context.report_progress(30))
            reported.append(await context.report_progress(10))
            async with database.session() as session:
                job = await JobRepository(session, test_settings).get_job(context.job_id)
                stored.append(job.progress)
            reported.append(await context.report_progress(150))

        job_id = await producer.enqueue("convert_document", "doc-1", {})
        await make_worker(registry=registry).run_once()

        assert reported == [30, 30, 100]
        assert stored == [30]
        assert (await producer.get_job(job_id)).progress == 100

    async def test_graceful_shutdown_finishes_in_flight(
        self,
        producer: JobProducer,
        make_worker,
    ):
        """stop() lets a running job finish within the shutdown timeout."""
        started = asyncio.Event()
        registry = HandlerRegistry()

        @registry.register("slow")
        async def slow(context: JobContext) -> dict:
            started.set()
            await asyncio.sleep(0.1)
            return {"done": True}

        job_id = await producer.enqueue("slow", "doc-1", {})
        worker = make_worker(registry=registry)
        await worker.start()
        await asyncio.wait_for(started.wait(), timeout=5)

        await worker.stop(timeout_ms=2_000)

        job = await producer.get_job(job_id)
        assert job.status == JobStatus.COMPLETED

    async def test_shutdown_timeout_abandons_job(
        self,
        producer: JobProducer,
        make_worker,
    ):
        """A job still running after the timeout stays processing for the reaper."""
        started = asyncio.Event()
        registry = HandlerRegistry()

        @registry.register("stuck")
        async def stuck(context: JobContext) -> None:
            started.set()
            await asyncio.sleep(30)

        job_id = await producer.enqueue("stuck", "doc-1", {})
        worker = make_worker(registry=registry)
        await worker.start()
        await asyncio.wait_for(started.wait(), timeout=5)

        await worker.stop(timeout_ms=50)

        job = await producer.get_job(job_id)
        assert job.status == JobStatus.PROCESSING
        assert job.lease_owner == "worker-1"
        assert worker.in_flight == []

    async def test_heartbeat_extends_lease(
        self,
        producer: JobProducer,
        make_worker,
        test_settings: Settings,
    ):
        """Long-running jobs keep their lease through heartbeats."""
        settings = test_settings.model_copy(
            update={
                "worker_lease_duration_ms": 300,
                "worker_heartbeat_interval_seconds": 0.05,
            }
        )
        registry = HandlerRegistry()
        leases = []

        @registry.register("long")
        async def long_running(context: JobContext) -> None:
            for _ in range(3):
                await asyncio.sleep(0.15)
                job = await producer.get_job(context.job_id)
                leases.append(job.lease_expires_at)

        job_id = await producer.enqueue("long", "doc-1", {})
        worker = make_worker(registry=registry, settings=settings)
        await worker.start()
        try:
            job = await wait_for_status(producer, job_id, {JobStatus.COMPLETED})
        finally:
            await worker.stop()

        assert job.attempts == 0
        assert leases == sorted(leases)
        assert leases[-1] > leases[0]
