"""
Rate-limit state stores.

A store owns the per-key window counters and the per-service admission
counters. Every window check is a single atomic increment-and-check so
several processes can share one Redis store.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass

from redis.asyncio import Redis
from redis.exceptions import RedisError

from workgate.constants import LimiterOutcome
from workgate.exceptions import LimiterStoreUnavailable
from workgate.types.limiter import LimiterMetrics, WindowState

logger = logging.getLogger(__name__)

DEFAULT_METRICS_TTL_SECONDS = 24 * 60 * 60


class RateLimitStore(ABC):
    """Backing store for admission windows and limiter counters."""

    @abstractmethod
    async def hit(self, key: str, limit: int, window_ms: int) -> WindowState:
        """
        Try to take one grant from the window for `key`.

        Starts a new window when none exists or the previous one expired.

        Raises:
            LimiterStoreUnavailable: If the store cannot be reached.
        """

    @abstractmethod
    async def incr_metric(self, service: str, outcome: LimiterOutcome, amount: int = 1) -> None:
        """Increment an admission counter for a limiter service."""

    @abstractmethod
    async def get_metrics(self, service: str) -> LimiterMetrics:
        """Read the admission counters for a limiter service."""

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Drop the window for `key`."""

    async def ping(self) -> None:
        """
        Check the store is reachable.

        Raises:
            LimiterStoreUnavailable: If the store cannot be reached.
        """

    async def close(self) -> None:
        """Release store resources."""


@dataclass
class _Window:
    started_at: float
    window_seconds: float
    count: int = 0

    def expired(self, now: float) -> bool:
        return now >= self.started_at + self.window_seconds


class MemoryRateLimitStore(RateLimitStore):
    """
    Single-process store backed by dictionaries.

    Args:
        clock: Monotonic clock in seconds. Injectable for tests.
        metrics_ttl_seconds: Lifetime of a service's counters.
    """

    # Expired windows are swept once this many keys are tracked
    _SWEEP_THRESHOLD = 10_000

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        metrics_ttl_seconds: int = DEFAULT_METRICS_TTL_SECONDS,
    ):
        self._clock = clock
        self._metrics_ttl = metrics_ttl_seconds
        self._windows: dict[str, _Window] = {}
        self._metrics: dict[str, tuple[LimiterMetrics, float]] = {}

    async def hit(self, key: str, limit: int, window_ms: int) -> WindowState:
        now = self._clock()
        window = self._windows.get(key)
        if window is None or window.expired(now):
            if len(self._windows) >= self._SWEEP_THRESHOLD:
                self._sweep(now)
            window = _Window(started_at=now, window_seconds=window_ms / 1000)
            self._windows[key] = window

        permitted = window.count < limit
        if permitted:
            window.count += 1

        reset_after_ms = (window.started_at + window.window_seconds - now) * 1000
        return WindowState(
            count=window.count,
            limit=limit,
            permitted=permitted,
            reset_after_ms=max(reset_after_ms, 0.0),
        )

    def _sweep(self, now: float) -> None:
        for key in [k for k, w in self._windows.items() if w.expired(now)]:
            del self._windows[key]

    def _live_metrics(self, service: str) -> LimiterMetrics | None:
        entry = self._metrics.get(service)
        if entry is None:
            return None
        metrics, expires_at = entry
        if self._clock() >= expires_at:
            del self._metrics[service]
            return None
        return metrics

    async def incr_metric(self, service: str, outcome: LimiterOutcome, amount: int = 1) -> None:
        metrics = self._live_metrics(service)
        if metrics is None:
            metrics = LimiterMetrics()
            self._metrics[service] = (metrics, self._clock() + self._metrics_ttl)
        field = LimiterOutcome(outcome).value
        setattr(metrics, field, getattr(metrics, field) + amount)

    async def get_metrics(self, service: str) -> LimiterMetrics:
        metrics = self._live_metrics(service)
        if metrics is None:
            return LimiterMetrics()
        return metrics.model_copy()

    async def reset(self, key: str) -> None:
        self._windows.pop(key, None)


class RedisRateLimitStore(RateLimitStore):
    """
    Shared store on Redis.

    A window is a counter key created with `SET key 0 PX window NX`; the
    increment and TTL read run in the same MULTI/EXEC transaction, so the
    window resets atomically when the key expires. Service counters live
    in a hash that expires `metrics_ttl_seconds` after creation.
    """

    def __init__(
        self,
        client: Redis,
        prefix: str = "workgate",
        metrics_ttl_seconds: int = DEFAULT_METRICS_TTL_SECONDS,
    ):
        self._client = client
        self._prefix = prefix
        self._metrics_ttl = metrics_ttl_seconds

    def _window_key(self, key: str) -> str:
        return f"{self._prefix}:ratelimit:{key}"

    def _metrics_key(self, service: str) -> str:
        return f"{self._prefix}:ratelimit-metrics:{service}"

    async def hit(self, key: str, limit: int, window_ms: int) -> WindowState:
        redis_key = self._window_key(key)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.set(redis_key, 0, px=int(window_ms), nx=True)
                pipe.incr(redis_key)
                pipe.pttl(redis_key)
                _, count, ttl_ms = await pipe.execute()

            # Key lost its expiry; restore it so the window can end
            if ttl_ms < 0:
                await self._client.pexpire(redis_key, int(window_ms))
                ttl_ms = window_ms
        except (RedisError, OSError) as e:
            raise LimiterStoreUnavailable(
                "Rate limit store unavailable",
                details={"key": key, "error": str(e)},
            ) from e

        count = int(count)
        return WindowState(
            count=min(count, limit),
            limit=limit,
            permitted=count <= limit,
            reset_after_ms=float(ttl_ms),
        )

    async def incr_metric(self, service: str, outcome: LimiterOutcome, amount: int = 1) -> None:
        redis_key = self._metrics_key(service)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hincrby(redis_key, LimiterOutcome(outcome).value, amount)
                pipe.ttl(redis_key)
                _, ttl = await pipe.execute()
            if ttl < 0:
                await self._client.expire(redis_key, self._metrics_ttl)
        except (RedisError, OSError) as e:
            raise LimiterStoreUnavailable(
                "Rate limit store unavailable",
                details={"service": service, "error": str(e)},
            ) from e

    async def get_metrics(self, service: str) -> LimiterMetrics:
        try:
            raw = await self._client.hgetall(self._metrics_key(service))
        except (RedisError, OSError) as e:
            raise LimiterStoreUnavailable(
                "Rate limit store unavailable",
                details={"service": service, "error": str(e)},
            ) from e

        counters = {
            (name.decode() if isinstance(name, bytes) else name): int(value)
            for name, value in raw.items()
        }
        return LimiterMetrics(
            allowed=counters.get(LimiterOutcome.ALLOWED.value, 0),
            queued=counters.get(LimiterOutcome.QUEUED.value, 0),
            rejected=counters.get(LimiterOutcome.REJECTED.value, 0),
        )

    async def ping(self) -> None:
        try:
            await self._client.ping()
        except (RedisError, OSError) as e:
            raise LimiterStoreUnavailable(
                "Rate limit store unavailable",
                details={"error": str(e)},
            ) from e

    async def reset(self, key: str) -> None:
        try:
            await self._client.delete(self._window_key(key))
        except (RedisError, OSError) as e:
            raise LimiterStoreUnavailable(
                "Rate limit store unavailable",
                details={"key": key, "error": str(e)},
            ) from e
