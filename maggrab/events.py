"""
Live Update Events
==================

Contract for the push channel that feeds the dashboard, plus an in-process
broadcaster. Publishing is fire-and-forget: a slow subscriber loses events
rather than slowing the daemon down.
"""

import asyncio
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from .utils.logging import get_logger_for_component
from .utils.timeutils import now_ms


class EventType(str, Enum):
    """Event types understood by the dashboard."""
    HEARTBEAT = "heartbeat"
    FEED_STATUS = "feedStatus"
    STATS = "stats"
    GRABBED = "grabbed"
    EXTRACTED = "extracted"


class DaemonEvent(BaseModel):
    """Message pushed to live-update subscribers."""
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: int = Field(default_factory=now_ms)


class EventPublisher(Protocol):
    """Anything that can accept daemon events."""

    def publish(self, event: DaemonEvent) -> None:
        ...


class NullPublisher:
    """Publisher that discards every event."""

    def publish(self, event: DaemonEvent) -> None:
        return None


class EventBroadcaster:
    """Fan events out to subscriber queues without ever blocking."""

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: List[asyncio.Queue] = []
        self.dropped = 0
        self.logger = get_logger_for_component("events")

    def subscribe(self, queue_size: Optional[int] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size or self.queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: DaemonEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                self.logger.debug(f"Dropped {event.type.value} event for a slow subscriber")
