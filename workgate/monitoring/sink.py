"""
Alert sinks: bounded, newest-first alert history.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque

from redis.asyncio import Redis
from redis.exceptions import WatchError

from workgate.types.monitoring import Alert

logger = logging.getLogger(__name__)

DEFAULT_MAX_ALERTS = 100
DEFAULT_RETENTION_SECONDS = 24 * 60 * 60
UPDATE_RETRIES = 3


class AlertSink(ABC):
    """Append-only alert history capped at `max_alerts` entries."""

    @abstractmethod
    async def record(self, alert: Alert) -> None:
        """Store an alert."""

    @abstractmethod
    async def update(self, alert: Alert) -> bool:
        """
        Replace the stored alert with the same id.

        Returns:
            False if the alert already fell out of the history.
        """

    @abstractmethod
    async def recent(self, limit: int | None = None) -> list[Alert]:
        """Stored alerts, newest first. `limit` of 0 or less returns nothing."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every stored alert."""


class MemoryAlertSink(AlertSink):
    """Per-process alert history in a bounded deque; oldest entries drop off."""

    def __init__(self, max_alerts: int = DEFAULT_MAX_ALERTS):
        self._alerts: deque[Alert] = deque(maxlen=max_alerts)

    async def record(self, alert: Alert) -> None:
        self._alerts.appendleft(alert)

    async def update(self, alert: Alert) -> bool:
        for index, stored in enumerate(self._alerts):
            if stored.id == alert.id:
                self._alerts[index] = alert
                return True
        return False

    async def recent(self, limit: int | None = None) -> list[Alert]:
        alerts = list(self._alerts)
        if limit is None:
            return alerts
        return alerts[: max(limit, 0)]

    async def clear(self) -> None:
        self._alerts.clear()


class RedisAlertSink(AlertSink):
    """
    Alert history in a Redis list.

    New alerts are pushed to the head; the list is trimmed to
    `max_alerts` and expires `retention_seconds` after the last write.
    """

    def __init__(
        self,
        client: Redis,
        prefix: str = "workgate",
        max_alerts: int = DEFAULT_MAX_ALERTS,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ):
        self._client = client
        self._key = f"{prefix}:alerts"
        self._max_alerts = max_alerts
        self._retention = retention_seconds

    async def record(self, alert: Alert) -> None:
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lpush(self._key, alert.model_dump_json())
            pipe.ltrim(self._key, 0, self._max_alerts - 1)
            pipe.expire(self._key, self._retention)
            await pipe.execute()

    async def update(self, alert: Alert) -> bool:
        # WATCH so a concurrent LPUSH cannot shift the index under LSET
        for _ in range(UPDATE_RETRIES):
            async with self._client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._key)
                    raw = await pipe.lrange(self._key, 0, -1)
                    index = next(
                        (
                            i
                            for i, item in enumerate(raw)
                            if Alert.model_validate_json(item).id == alert.id
                        ),
                        None,
                    )
                    if index is None:
                        return False
                    pipe.multi()
                    pipe.lset(self._key, index, alert.model_dump_json())
                    await pipe.execute()
                    return True
                except WatchError:
                    continue
        logger.warning("Alert update lost to concurrent writes", extra={"alert": alert.name})
        return False

    async def recent(self, limit: int | None = None) -> list[Alert]:
        count = self._max_alerts if limit is None else limit
        if count <= 0:
            return []
        raw = await self._client.lrange(self._key, 0, count - 1)
        return [Alert.model_validate_json(item) for item in raw]

    async def clear(self) -> None:
        await self._client.delete(self._key)
