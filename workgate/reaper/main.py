"""
Lease reaper for recovering stalled jobs.

The reaper runs periodically to find processing jobs whose lease has
expired (the worker crashed or lost its connection) and returns them to
the queue, or fails them when the lost attempt exhausts max_attempts.
"""

import asyncio
import logging
import signal

from workgate.channel import EventChannel
from workgate.config import Settings, get_settings
from workgate.db import Database, JobRepository
from workgate.observability.logging import setup_logging
from workgate.observability.metrics import MetricsCollector, get_metrics
from workgate.types.events import JobEvent

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers stalled jobs.

    Runs periodically to:
    1. Find PROCESSING jobs with an expired lease_expires_at
    2. Count the lost attempt and return them to PENDING (or FAILED)
    3. Publish stalled events and record metrics
    """

    def __init__(
        self,
        database: Database,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        events: EventChannel | None = None,
        interval_seconds: float | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            database: The job store.
            settings: Settings instance. Defaults to get_settings().
            metrics: Metrics collector.
            events: Optional channel receiving stalled events.
            interval_seconds: Seconds between reaper runs.
        """
        self._database = database
        self._settings = settings or get_settings()
        self._metrics = metrics or get_metrics()
        self._events = events
        self.interval = interval_seconds or self._settings.reaper_interval_seconds
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Run the reaper loop until stop() is called."""
        logger.info(f"Reaper starting with interval {self.interval}s")

        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Run one recovery pass.

        Returns:
            Number of jobs recovered.
        """
        async with self._database.session() as session:
            repo = JobRepository(session, self._settings)
            jobs = await repo.recover_stalled_jobs()

        for job in jobs:
            self._metrics.record_lease_expired(job.type)
            logger.warning(
                "Recovered stalled job",
                extra={
                    "job_id": str(job.id),
                    "job_type": job.type,
                    "status": job.status.value,
                    "attempts": job.attempts,
                },
            )
            if self._events is not None:
                self._events.publish(
                    JobEvent.stalled(
                        job_id=job.id,
                        job_type=job.type,
                        attempts=job.attempts,
                        status=job.status,
                    )
                )

        if jobs:
            logger.info(f"Recovered {len(jobs)} expired leases")
        return len(jobs)


async def run_async() -> None:
    """Run a stand-alone reaper against the configured job store."""
    settings = get_settings()
    setup_logging(settings)

    database = Database(settings=settings)
    await database.connect()
    await database.create_tables()

    reaper = Reaper(database, settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        await reaper.start()
    finally:
        await database.close()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
