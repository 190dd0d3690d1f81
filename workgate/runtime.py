"""
Process runtime.

Builds the job store, producer, limiters, worker, reaper and monitor from
settings and tears them down in reverse order. One Runtime per process.
"""

import asyncio
import logging
from typing import Any

from prometheus_client import start_http_server
from redis.asyncio import Redis

from workgate.channel import EventChannel
from workgate.config import Settings, get_settings
from workgate.constants import ComponentStatus, HealthState
from workgate.db import Database
from workgate.exceptions import LimiterStoreUnavailable
from workgate.limiter.limiter import AdmissionLimiter
from workgate.limiter.store import (
    MemoryRateLimitStore,
    RateLimitStore,
    RedisRateLimitStore,
)
from workgate.monitoring.monitor import Monitor
from workgate.monitoring.sink import AlertSink, MemoryAlertSink, RedisAlertSink
from workgate.observability.metrics import MetricsCollector, get_metrics
from workgate.observability.tracing import (
    instrument_sqlalchemy,
    setup_tracing,
    shutdown_tracing,
)
from workgate.queue.producer import JobProducer
from workgate.reaper.main import Reaper
from workgate.types.monitoring import HealthStatus
from workgate.utils import utcnow
from workgate.worker.handlers import HandlerRegistry
from workgate.worker.main import Worker

logger = logging.getLogger(__name__)


class Runtime:
    """
    Owns every long-lived component.

    Usage:
        async with Runtime(settings, registry=registry) as runtime:
            await runtime.producer.enqueue("convert", key, payload)
            await runtime.start_worker()
            ...
    """

    def __init__(
        self,
        settings: Settings | None = None,
        registry: HandlerRegistry | None = None,
        metrics: MetricsCollector | None = None,
        redis: Redis | None = None,
        serve_metrics: bool = True,
    ):
        """
        Args:
            settings: Settings instance. Defaults to get_settings().
            registry: Job handlers for the worker.
            metrics: Prometheus collector. Defaults to the process registry.
            redis: Redis client to use instead of one built from redis_url.
            serve_metrics: Start the Prometheus scrape endpoint on start().
        """
        self.settings = settings or get_settings()
        self.registry = registry or HandlerRegistry()
        self.metrics = metrics or get_metrics()
        self._redis = redis
        self._owns_redis = False
        self._serve_metrics = serve_metrics

        self.events = EventChannel(self.settings.event_channel_size)
        self.database = Database(settings=self.settings)
        self.limiter_store: RateLimitStore | None = None
        self.alert_sink: AlertSink | None = None
        self.limiters: dict[str, AdmissionLimiter] = {}

        self.producer: JobProducer | None = None
        self.reaper: Reaper | None = None
        self.worker: Worker | None = None
        self.monitor: Monitor | None = None

        self._reaper_task: asyncio.Task[None] | None = None
        self._started = False

    async def start(self) -> None:
        """
        Connect to the stores and start the reaper and monitor loops.

        On failure, whatever was already opened is released before the
        error propagates.
        """
        if self._started:
            return

        try:
            await self._start()
        except BaseException:
            logger.exception("Runtime failed to start")
            await self._shutdown()
            raise
        self._started = True
        logger.info("Runtime started")

    async def _start(self) -> None:
        if self.settings.otel_enabled:
            setup_tracing(self.settings)

        await self.database.connect()
        await self.database.create_tables()
        if self.settings.otel_enabled:
            instrument_sqlalchemy(self.database.engine.sync_engine)

        if self._redis is None and self.settings.redis_url:
            self._redis = Redis.from_url(self.settings.redis_url, decode_responses=True)
            self._owns_redis = True

        if self._redis is not None:
            self.limiter_store = RedisRateLimitStore(
                self._redis,
                prefix=self.settings.redis_key_prefix,
                metrics_ttl_seconds=self.settings.limiter_metrics_ttl_seconds,
            )
            self.alert_sink = RedisAlertSink(
                self._redis,
                prefix=self.settings.redis_key_prefix,
                max_alerts=self.settings.alert_history_limit,
                retention_seconds=self.settings.alert_retention_seconds,
            )
        else:
            logger.info("No redis_url configured; using in-memory limiter store and alert sink")
            self.limiter_store = MemoryRateLimitStore(
                metrics_ttl_seconds=self.settings.limiter_metrics_ttl_seconds
            )
            self.alert_sink = MemoryAlertSink(self.settings.alert_history_limit)

        self.producer = JobProducer(self.database, self.settings, self.metrics)
        self.reaper = Reaper(self.database, self.settings, self.metrics, self.events)
        self.monitor = Monitor(
            self.database,
            limiters=self.limiters,
            sink=self.alert_sink,
            settings=self.settings,
            events=self.events,
            metrics=self.metrics,
        )
        self.limiter()

        if self._serve_metrics and self.settings.prometheus_port:
            start_http_server(self.settings.prometheus_port)
            logger.info(
                "Prometheus metrics endpoint started",
                extra={"port": self.settings.prometheus_port},
            )

        self._reaper_task = asyncio.create_task(self.reaper.start())
        await self.monitor.start()

    def limiter(self, name: str = "default", **overrides: Any) -> AdmissionLimiter:
        """
        Get or create the limiter for a service.

        Keyword overrides (limit, window_ms, fail_open) apply on creation.
        """
        if self.limiter_store is None:
            raise RuntimeError("Runtime not started")

        limiter = self.limiters.get(name)
        if limiter is None:
            limiter = AdmissionLimiter(
                self.limiter_store,
                name=name,
                settings=self.settings,
                metrics=self.metrics,
                **overrides,
            )
            self.limiters[name] = limiter
            if self.monitor is not None:
                self.monitor.track_limiter(name, limiter)
        return limiter

    async def start_worker(self, **overrides: Any) -> Worker:
        """Create and start the job worker."""
        if not self._started:
            raise RuntimeError("Runtime not started")
        if self.worker is None:
            self.worker = Worker(
                self.database,
                self.registry,
                settings=self.settings,
                metrics=self.metrics,
                events=self.events,
                reaper=self.reaper,
                **overrides,
            )
        await self.worker.start()
        return self.worker

    async def health(self) -> HealthStatus:
        """
        Check the job store and the limiter store.

        The job store answers `SELECT 1`; when it is down the runtime is
        unhealthy. An unreachable limiter store only degrades the runtime,
        since limiters keep admitting under their failure policy.
        """
        services: dict[str, ComponentStatus] = {}
        queue_depth: dict[str, int] | None = None

        if await self.database.ping():
            services["database"] = ComponentStatus.UP
            if self.producer is not None:
                try:
                    queue_depth = await self.producer.queue_depth()
                except Exception:
                    logger.exception("Failed to read queue depth")
        else:
            services["database"] = ComponentStatus.DOWN

        if self.limiter_store is None:
            services["limiter_store"] = ComponentStatus.DOWN
        else:
            try:
                await self.limiter_store.ping()
                services["limiter_store"] = ComponentStatus.UP
            except LimiterStoreUnavailable:
                logger.warning("Limiter store health check failed", exc_info=True)
                services["limiter_store"] = ComponentStatus.DEGRADED

        if self.worker is not None:
            services["worker"] = (
                ComponentStatus.UP if self.worker.is_running else ComponentStatus.DOWN
            )

        if ComponentStatus.DOWN in services.values():
            status = HealthState.UNHEALTHY
        elif ComponentStatus.DEGRADED in services.values():
            status = HealthState.DEGRADED
        else:
            status = HealthState.HEALTHY

        return HealthStatus(
            status=status,
            timestamp=utcnow(),
            services=services,
            queue_depth=queue_depth,
        )

    async def stop(self) -> None:
        """Stop components in reverse order and release connections."""
        if not self._started:
            return
        logger.info("Runtime stopping")
        await self._shutdown()
        logger.info("Runtime stopped")

    async def _shutdown(self) -> None:
        # Also runs after a partial start; every step tolerates missing parts
        if self.worker is not None:
            await self.worker.stop()
        if self.monitor is not None:
            await self.monitor.stop()
        if self.reaper is not None:
            await self.reaper.stop()
        if self._reaper_task is not None:
            await asyncio.gather(self._reaper_task, return_exceptions=True)
            self._reaper_task = None

        for limiter in self.limiters.values():
            await limiter.close()
        self.limiters.clear()
        if self._redis is not None and self._owns_redis:
            await self._redis.aclose()
            self._redis = None
            self._owns_redis = False

        await self.database.close()
        if self.settings.otel_enabled:
            shutdown_tracing()
        self._started = False

    async def __aenter__(self) -> "Runtime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()
