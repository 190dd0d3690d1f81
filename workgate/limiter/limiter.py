"""
Per-key admission limiter.

Callers acquire a grant before calling a rate-limited dependency. Grants
come from a fixed token window in the rate-limit store; callers over the
limit wait in an in-process FIFO list that is drained when the window
resets. The limiter never rejects: it either grants now, grants later,
or (when the store is down) grants in degraded mode.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from workgate.config import Settings, get_settings
from workgate.constants import SPAN_LIMITER_ACQUIRE, LimiterOutcome
from workgate.exceptions import LimiterStoreUnavailable
from workgate.limiter.store import RateLimitStore
from workgate.observability.metrics import MetricsCollector, get_metrics
from workgate.observability.tracing import get_tracer
from workgate.types.limiter import Admission, LimiterMetrics

logger = logging.getLogger(__name__)

# Floor for drain timers so a zero reset time cannot spin the loop
MIN_DRAIN_DELAY_MS = 1.0


@dataclass
class _Waiter:
    future: "asyncio.Future[Admission]"
    enqueued_at: float


@dataclass
class _KeyState:
    """In-process state for one key: the FIFO wait list and its drain timer."""

    waiters: deque[_Waiter] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    timer: asyncio.TimerHandle | None = None
    # Coroutines currently using this state; it is evicted at zero
    users: int = 0

    @property
    def idle(self) -> bool:
        return not self.waiters and self.timer is None and self.users == 0


class AdmissionLimiter:
    """
    Token-window limiter with FIFO queuing and fail-open semantics.

    Usage:
        limiter = AdmissionLimiter(store, name="ocr-api")

        await limiter.acquire(tenant_id)

        # Or as a context manager
        async with limiter.limit(tenant_id):
            ...
    """

    def __init__(
        self,
        store: RateLimitStore,
        name: str = "default",
        limit: int | None = None,
        window_ms: int | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
        fail_open: bool | None = None,
    ):
        """
        Initialize the limiter.

        Args:
            store: Rate-limit state store.
            name: Service name; namespaces store keys and labels metrics.
            limit: Grants per window. Defaults to settings.
            window_ms: Window length in milliseconds. Defaults to settings.
            settings: Settings instance. Defaults to get_settings().
            metrics: Prometheus collector.
            fail_open: Grant when the store is unavailable. Defaults to settings.
        """
        settings = settings or get_settings()
        self.name = name
        self.limit = limit if limit is not None else settings.rate_limit_requests
        self.window_ms = window_ms if window_ms is not None else settings.rate_limit_window_ms
        self.fail_open = fail_open if fail_open is not None else settings.rate_limit_fail_open

        if self.limit < 1:
            raise ValueError("limit must be at least 1")
        if self.window_ms <= 0:
            raise ValueError("window_ms must be positive")

        self._store = store
        self._metrics = metrics or get_metrics()
        self._keys: dict[str, _KeyState] = {}
        self._drains: set[asyncio.Task[None]] = set()
        self._closed = False

    def _store_key(self, key: str) -> str:
        return f"{self.name}:{key}"

    async def acquire(self, key: str, timeout: float | None = None) -> Admission:
        """
        Wait until a request for `key` may proceed.

        Args:
            key: Caller identity (tenant, API key, ...).
            timeout: Seconds to wait in the queue before giving up.

        Returns:
            The Admission describing how the grant was made.

        Raises:
            asyncio.TimeoutError: If `timeout` elapsed while queued.
            LimiterStoreUnavailable: If the store is down and fail-open is off.
        """
        if self._closed:
            raise RuntimeError("Limiter is closed")

        with get_tracer().start_as_current_span(SPAN_LIMITER_ACQUIRE) as span:
            span.set_attribute("limiter", self.name)
            span.set_attribute("key", key)

            state = self._keys.get(key)
            if state is None:
                state = self._keys[key] = _KeyState()

            state.users += 1
            try:
                waiter = await self._admit_or_enqueue(key, state)
            finally:
                state.users -= 1
                self._evict_if_idle(key, state)

            if isinstance(waiter, Admission):
                span.set_attribute("queued", False)
                return waiter

            span.set_attribute("queued", True)
            try:
                if timeout is None:
                    return await waiter.future
                return await asyncio.wait_for(waiter.future, timeout)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                self._discard(key, state, waiter)
                raise

    async def _admit_or_enqueue(self, key: str, state: _KeyState) -> Admission | _Waiter:
        async with state.lock:
            reset_after_ms: float | None = None

            # Arrivals behind existing waiters queue without probing the store
            if not state.waiters:
                try:
                    window = await self._store.hit(self._store_key(key), self.limit, self.window_ms)
                except LimiterStoreUnavailable as e:
                    return await self._grant_degraded(key, e)

                if window.permitted:
                    await self._record(LimiterOutcome.ALLOWED)
                    return Admission(key=key)
                reset_after_ms = window.reset_after_ms

            waiter = _Waiter(
                future=asyncio.get_running_loop().create_future(),
                enqueued_at=time.monotonic(),
            )
            state.waiters.append(waiter)
            self._schedule(key, state, reset_after_ms)
            logger.debug(
                "Request queued by rate limiter",
                extra={"limiter": self.name, "key": key, "position": len(state.waiters)},
            )
            return waiter

    async def _grant_degraded(self, key: str, error: LimiterStoreUnavailable) -> Admission:
        if not self.fail_open:
            raise error
        logger.warning(
            "Rate limit store unavailable; failing open",
            extra={"limiter": self.name, "key": key, "error": error.message},
        )
        self._metrics.record_limiter_degraded(self.name)
        await self._record(LimiterOutcome.ALLOWED)
        return Admission(key=key, degraded=True)

    def _schedule(self, key: str, state: _KeyState, delay_ms: float | None) -> None:
        if state.timer is not None:
            return
        delay_ms = max(delay_ms if delay_ms is not None else self.window_ms, MIN_DRAIN_DELAY_MS)
        state.timer = asyncio.get_running_loop().call_later(
            delay_ms / 1000, self._start_drain, key, state
        )

    def _start_drain(self, key: str, state: _KeyState) -> None:
        state.timer = None
        task = asyncio.create_task(self._drain(key, state))
        self._drains.add(task)
        task.add_done_callback(self._drains.discard)

    async def _drain(self, key: str, state: _KeyState) -> None:
        """Grant queued waiters in order while the store permits."""
        state.users += 1
        try:
            async with state.lock:
                next_delay_ms: float | None = None
                while state.waiters:
                    if state.waiters[0].future.done():
                        state.waiters.popleft()
                        continue

                    try:
                        window = await self._store.hit(
                            self._store_key(key), self.limit, self.window_ms
                        )
                    except LimiterStoreUnavailable as e:
                        await self._release_all(key, state, e)
                        break

                    # Timer fired before the store saw the window reset
                    if not window.permitted:
                        next_delay_ms = window.reset_after_ms
                        break

                    waiter = state.waiters.popleft()
                    if waiter.future.done():
                        continue
                    waited = time.monotonic() - waiter.enqueued_at
                    waiter.future.set_result(
                        Admission(key=key, queued=True, waited_ms=waited * 1000)
                    )
                    await self._record(LimiterOutcome.QUEUED, waited)

                if state.waiters and not self._closed:
                    self._schedule(key, state, next_delay_ms)
        except Exception:
            logger.exception(
                "Rate limiter drain failed",
                extra={"limiter": self.name, "key": key},
            )
            if state.waiters and not self._closed:
                self._schedule(key, state, None)
        finally:
            state.users -= 1
            self._evict_if_idle(key, state)

    async def _release_all(self, key: str, state: _KeyState, error: LimiterStoreUnavailable) -> None:
        """Store outage while draining: grant (or fail) every queued waiter."""
        logger.warning(
            "Rate limit store unavailable while draining; releasing queued requests",
            extra={
                "limiter": self.name,
                "key": key,
                "waiters": len(state.waiters),
                "fail_open": self.fail_open,
            },
        )
        while state.waiters:
            waiter = state.waiters.popleft()
            if waiter.future.done():
                continue
            if not self.fail_open:
                waiter.future.set_exception(error)
                continue
            waited = time.monotonic() - waiter.enqueued_at
            waiter.future.set_result(
                Admission(key=key, queued=True, degraded=True, waited_ms=waited * 1000)
            )
            self._metrics.record_limiter_degraded(self.name)
            await self._record(LimiterOutcome.QUEUED, waited)

    def _discard(self, key: str, state: _KeyState, waiter: _Waiter) -> None:
        """Remove a timed-out or cancelled caller from the wait list."""
        try:
            state.waiters.remove(waiter)
        except ValueError:
            pass
        if not state.waiters and state.timer is not None:
            state.timer.cancel()
            state.timer = None
        self._evict_if_idle(key, state)

    def _evict_if_idle(self, key: str, state: _KeyState) -> None:
        if state.idle and self._keys.get(key) is state:
            del self._keys[key]

    async def _record(self, outcome: LimiterOutcome, waited_seconds: float = 0.0) -> None:
        self._metrics.record_admission(self.name, outcome.value, waited_seconds)
        try:
            await self._store.incr_metric(self.name, outcome)
        except LimiterStoreUnavailable as e:
            logger.warning(
                "Failed to record limiter metric",
                extra={"limiter": self.name, "outcome": outcome.value, "error": e.message},
            )

    @asynccontextmanager
    async def limit(self, key: str, timeout: float | None = None) -> AsyncIterator[Admission]:
        """Acquire a grant for the duration of the block."""
        yield await self.acquire(key, timeout=timeout)

    def pending(self, key: str) -> int:
        """Number of callers waiting for `key`."""
        state = self._keys.get(key)
        if state is None:
            return 0
        return sum(1 for waiter in state.waiters if not waiter.future.done())

    @property
    def tracked_keys(self) -> int:
        return len(self._keys)

    async def get_metrics(self) -> LimiterMetrics:
        """
        Read this limiter's admission counters from the store.

        Raises:
            LimiterStoreUnavailable: If the store cannot be reached.
        """
        return await self._store.get_metrics(self.name)

    async def close(self) -> None:
        """Cancel drain timers and every queued caller."""
        self._closed = True
        for state in self._keys.values():
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None
            for waiter in state.waiters:
                waiter.future.cancel()
            state.waiters.clear()
        for task in list(self._drains):
            task.cancel()
        if self._drains:
            await asyncio.gather(*self._drains, return_exceptions=True)
        self._keys.clear()
        logger.info("Rate limiter closed", extra={"limiter": self.name})
