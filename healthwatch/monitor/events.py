"""In-process event bus — fans monitor events out to subscriber queues.

Subscribers get their own bounded asyncio.Queue; a slow consumer loses
events rather than blocking the scheduler.
"""

from __future__ import annotations

import asyncio
import logging

from healthwatch.monitor.models import MonitorEvent

logger = logging.getLogger(__name__)


class EventBus:
    def __init__(self, maxsize: int = 100) -> None:
        self._maxsize = maxsize
        self._queues: list[asyncio.Queue[MonitorEvent]] = []

    def subscribe(self) -> asyncio.Queue[MonitorEvent]:
        queue: asyncio.Queue[MonitorEvent] = asyncio.Queue(maxsize=self._maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[MonitorEvent]) -> None:
        try:
            self._queues.remove(queue)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def publish(self, event: MonitorEvent) -> None:
        """Push an event to all subscribers (non-blocking)."""
        for q in self._queues:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Dropping %s event for slow subscriber", event.kind.value)
