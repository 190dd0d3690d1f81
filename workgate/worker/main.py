"""
Worker process for executing jobs.

The worker leases jobs from the store, runs their handlers, and applies
the retry state machine: ack on success, nack (retry with backoff or
terminal failure) on error.
"""

import asyncio
import logging
import os
import signal
import time
from typing import Any
from uuid import UUID

from workgate.channel import EventChannel
from workgate.config import Settings, get_settings
from workgate.constants import SPAN_ACQUIRE_LEASE, SPAN_EXECUTE_JOB, JobStatus
from workgate.db import Database, Job, JobRepository
from workgate.observability.logging import bind_context, setup_logging
from workgate.observability.metrics import MetricsCollector, get_metrics
from workgate.observability.tracing import get_tracer
from workgate.reaper.main import Reaper
from workgate.types.events import JobEvent
from workgate.types.job import JobContext, JobResult, LeaseInfo, clamp_progress
from workgate.utils import utcnow
from workgate.worker.handlers import HandlerRegistry, load_registry

logger = logging.getLogger(__name__)


class ProgressReporter:
    """
    The `report_progress` callable handed to job handlers.

    Values are clamped to 0-100 and never move backwards. Each increase
    is persisted while this worker still owns the lease.
    """

    def __init__(
        self,
        database: Database,
        settings: Settings,
        job_id: UUID,
        worker_id: str,
        initial: int = 0,
    ):
        self._database = database
        self._settings = settings
        self._job_id = job_id
        self._worker_id = worker_id
        self.current = initial

    async def __call__(self, value: float) -> int:
        progress = clamp_progress(value)
        if progress <= self.current:
            return self.current
        self.current = progress

        try:
            async with self._database.session() as session:
                repo = JobRepository(session, self._settings)
                await repo.update_progress(self._job_id, self._worker_id, progress)
        except Exception:
            # Progress is advisory; the job keeps running
            logger.exception(
                "Failed to persist job progress",
                extra={"job_id": str(self._job_id), "progress": progress},
            )
        return progress


class Worker:
    """
    Job worker that leases and executes jobs.

    Features:
    - Atomic lease acquisition (FOR UPDATE SKIP LOCKED on PostgreSQL)
    - `concurrency` lease slots, each running one job at a time
    - Heartbeat to extend leases for long-running jobs
    - Graceful shutdown with a bounded grace period
    - Retry with exponential backoff, then terminal failure
    """

    def __init__(
        self,
        database: Database,
        registry: HandlerRegistry,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        events: EventChannel | None = None,
        reaper: Reaper | None = None,
        worker_id: str | None = None,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        job_types: list[str] | None = None,
    ):
        """
        Initialize the worker.

        Args:
            database: The job store.
            registry: Handlers by job type.
            settings: Settings instance. Defaults to get_settings().
            metrics: Metrics collector.
            events: Optional channel receiving lifecycle events.
            reaper: Optional reaper run once on start to reclaim stalled jobs.
            worker_id: Unique worker identifier. Defaults to hostname + PID.
            concurrency: Number of lease slots.
            poll_interval: Seconds between polls when the queue is empty.
            job_types: Restrict leasing to these job types (default: any).
        """
        self._database = database
        self._registry = registry
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._events = events
        self._reaper = reaper

        self.worker_id = (
            worker_id
            or self._settings.worker_id
            or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.concurrency = concurrency or self._settings.worker_concurrency
        self.poll_interval = poll_interval or self._settings.worker_poll_interval_seconds
        self.heartbeat_interval = self._settings.worker_heartbeat_interval_seconds
        self.lease_duration_ms = self._settings.worker_lease_duration_ms
        self.job_types = job_types

        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self._running = False
        self._stop_event = asyncio.Event()
        self._slots: list[asyncio.Task[None]] = []
        self._current_jobs: dict[UUID, LeaseInfo] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> list[LeaseInfo]:
        """Leases currently held by this worker."""
        return list(self._current_jobs.values())

    async def start(self) -> None:
        """Start the lease slots and the heartbeat loop."""
        if self._running:
            return

        logger.info(
            "Worker starting",
            extra={"worker_id": self.worker_id, "concurrency": self.concurrency},
        )
        if not len(self._registry):
            logger.warning("Worker has no registered handlers", extra={"worker_id": self.worker_id})

        self._running = True
        self._stop_event.clear()

        # Reclaim jobs left processing by a previous instance
        if self._reaper is not None:
            try:
                await self._reaper.run_once()
            except Exception:
                logger.exception("Startup reaper pass failed")

        self._slots = [
            asyncio.create_task(self._slot_loop(slot), name=f"{self.worker_id}-slot-{slot}")
            for slot in range(self.concurrency)
        ]
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop(self, timeout_ms: int | None = None) -> None:
        """
        Stop the worker gracefully.

        No new leases are taken. In-flight jobs get `timeout_ms` (default
        worker_shutdown_timeout_ms) to finish; slots still busy after that
        are cancelled and their jobs stay processing until the reaper
        reclaims them.
        """
        if not self._running:
            return

        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
        self._stop_event.set()

        if timeout_ms is None:
            timeout_ms = self._settings.worker_shutdown_timeout_ms

        if self._slots:
            _, pending = await asyncio.wait(self._slots, timeout=timeout_ms / 1000)
            if pending:
                logger.warning(
                    f"Abandoning {len(self._current_jobs)} in-flight jobs after shutdown timeout",
                    extra={
                        "worker_id": self.worker_id,
                        "job_ids": [str(job_id) for job_id in self._current_jobs],
                    },
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._slots = []

        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None

        self._current_jobs.clear()
        self._running = False
        logger.info("Worker stopped", extra={"worker_id": self.worker_id})

    async def run_once(self) -> bool:
        """
        Lease one job and run it to ack or nack.

        Returns:
            True if a job was processed, False if none was available.
        """
        job = await self._acquire()
        if job is None:
            return False
        await self._execute(job)
        return True

    async def _slot_loop(self, slot: int) -> None:
        bind_context(worker_id=self.worker_id, slot=slot)
        while not self._stop_event.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.exception(
                    f"Error in worker loop: {e}",
                    extra={"worker_id": self.worker_id, "slot": slot},
                )
                processed = False

            if not processed:
                await self._idle(self.poll_interval)

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _acquire(self) -> Job | None:
        with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
            span.set_attribute("worker_id", self.worker_id)
            async with self._database.session() as session:
                repo = JobRepository(session, self._settings)
                job = await repo.acquire_lease(
                    worker_id=self.worker_id,
                    job_types=self.job_types,
                    lease_duration_ms=self.lease_duration_ms,
                )
            if job is not None:
                span.set_attribute("job_id", str(job.id))
        return job

    async def _execute(self, job: Job) -> None:
        """
        Execute a single leased job.

        Handles the full lifecycle:
        1. Build the JobContext and publish a leased event
        2. Execute the handler
        3. Ack on success, nack on failure
        """
        start_time = time.monotonic()
        self._current_jobs[job.id] = LeaseInfo(
            job_id=job.id,
            job_type=job.type,
            lease_owner=self.worker_id,
            lease_expires_at=job.lease_expires_at,
            acquired_at=utcnow(),
        )
        self._metrics.record_lease_acquired(self.worker_id)
        self._publish(JobEvent.leased(job.id, job.type, self.worker_id, job.attempts))

        context = JobContext(
            job_id=job.id,
            job_type=job.type,
            idempotency_key=job.idempotency_key,
            attempt=job.attempts + 1,
            max_attempts=job.max_attempts,
            payload=job.payload,
            lease_owner=self.worker_id,
            lease_expires_at=job.lease_expires_at,
            report_progress=ProgressReporter(
                self._database,
                self._settings,
                job.id,
                self.worker_id,
                initial=job.progress,
            ),
        )

        logger.info(
            "Executing job",
            extra={
                "job_id": str(job.id),
                "job_type": job.type,
                "attempt": context.attempt,
            },
        )

        try:
            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(job.id))
                span.set_attribute("job_type", job.type)
                span.set_attribute("attempt", context.attempt)

                output, error = await self._invoke(context)
                span.set_attribute("success", error is None)

            duration = time.monotonic() - start_time
            if error is None:
                await self._ack(job, output, duration)
            else:
                await self._nack(job, error, duration)
        finally:
            self._current_jobs.pop(job.id, None)

    async def _invoke(self, context: JobContext) -> tuple[dict[str, Any] | None, str | None]:
        """Run the handler. Returns (output, error) with error None on success."""
        handler = self._registry.get(context.job_type)
        if handler is None:
            logger.error(
                f"No handler for job type: {context.job_type}",
                extra={"job_id": str(context.job_id)},
            )
            return None, f"No handler registered for job type: {context.job_type}"

        try:
            result = await handler(context)
        except Exception as e:
            logger.exception(
                "Handler raised exception",
                extra={"job_id": str(context.job_id), "error": str(e)},
            )
            return None, str(e) or type(e).__name__

        if isinstance(result, JobResult):
            if not result.success:
                return None, result.error or "Handler reported failure"
            return result.output, None
        return result, None

    async def _ack(self, job: Job, output: dict[str, Any] | None, duration: float) -> None:
        async with self._database.session() as session:
            repo = JobRepository(session, self._settings)
            updated = await repo.complete_job(job.id, self.worker_id, result=output)

        if updated is None:
            return

        logger.info(
            "Job completed successfully",
            extra={"job_id": str(job.id), "duration": f"{duration:.2f}s"},
        )
        self._metrics.record_job_finished(job.type, JobStatus.COMPLETED.value, duration)
        self._publish(JobEvent.completed(job.id, job.type, updated.attempts, duration))

    async def _nack(self, job: Job, error: str, duration: float) -> None:
        async with self._database.session() as session:
            repo = JobRepository(session, self._settings)
            updated = await repo.fail_job(job.id, self.worker_id, error)

        if updated is None:
            return

        will_retry = updated.status == JobStatus.PENDING
        logger.warning(
            "Job failed",
            extra={
                "job_id": str(job.id),
                "error": error,
                "attempts": updated.attempts,
                "will_retry": will_retry,
            },
        )
        self._metrics.record_job_finished(
            job.type,
            "retry" if will_retry else JobStatus.FAILED.value,
            duration,
        )
        self._publish(
            JobEvent.failed(job.id, job.type, error, updated.attempts, will_retry)
        )

    def _publish(self, event: JobEvent) -> None:
        if self._events is not None:
            self._events.publish(event)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents jobs from being reclaimed by the reaper
        while they're still being executed.
        """
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self._current_jobs:
                continue

            try:
                async with self._database.session() as session:
                    repo = JobRepository(session, self._settings)
                    for job_id in list(self._current_jobs):
                        extended = await repo.extend_lease(
                            job_id, self.worker_id, self.lease_duration_ms
                        )
                        if extended:
                            logger.debug("Extended lease", extra={"job_id": str(job_id)})
                        else:
                            logger.warning(
                                "Lease lost during execution",
                                extra={"job_id": str(job_id), "worker_id": self.worker_id},
                            )
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")


async def run_async() -> None:
    """Run a worker, reaper and monitor until SIGTERM/SIGINT."""
    from workgate.runtime import Runtime

    settings = get_settings()
    setup_logging(settings)

    if settings.handlers_module:
        registry = load_registry(settings.handlers_module)
    else:
        registry = HandlerRegistry()

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_requested.set)

    async with Runtime(settings, registry=registry) as runtime:
        await runtime.start_worker()
        await stop_requested.wait()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
