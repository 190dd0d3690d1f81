"""
In-process event channel between the worker and the monitor.
"""

import asyncio
import logging

from workgate.types.events import JobEvent

logger = logging.getLogger(__name__)


class EventChannel:
    """
    Bounded queue of job lifecycle events.

    Publishing never blocks the worker: when the queue is full the oldest
    event is dropped to make room.
    """

    def __init__(self, maxsize: int = 10_000):
        self._queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, event: JobEvent) -> None:
        """Publish an event without waiting."""
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 1000 == 0:
                    logger.warning(
                        "Event channel full; dropping oldest events",
                        extra={"dropped": self.dropped},
                    )

    async def get(self) -> JobEvent:
        """Wait for the next event."""
        return await self._queue.get()

    def drain(self) -> list[JobEvent]:
        """Take every event currently queued."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def qsize(self) -> int:
        return self._queue.qsize()
