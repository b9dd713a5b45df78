"""
Status broadcasting to observers.

Events are fire-and-forget: a broken or slow observer never fails or
blocks the pipeline.
"""

import asyncio
import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Protocol

from inbox_pipeline.core.logging import get_logger

log = get_logger(__name__)


class EventType(str, Enum):
    """Kinds of status events."""

    STARTED = "started"
    CLASSIFIED = "classified"
    EXTRACTED = "extracted"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StatusEvent:
    """A progress notification for one message or account."""

    type: EventType
    message_id: int | None = None
    account_id: int | None = None
    progress: int | None = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "messageId": self.message_id,
            "accountId": self.account_id,
            "progress": self.progress,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class StatusBroadcaster(Protocol):
    def broadcast(self, event: StatusEvent) -> None:
        ...


class NullBroadcaster:
    """Discards every event."""

    def broadcast(self, event: StatusEvent) -> None:
        pass


class EventStreamBroadcaster:
    """
    In-process server-sent-events fan-out.

    Each subscriber owns a bounded asyncio.Queue on its event loop. Events
    may be published from any thread; when a subscriber's queue is full the
    event is dropped for that subscriber only.
    """

    def __init__(self, max_queue_size: int = 100):
        self.max_queue_size = max_queue_size
        self._subscribers: set[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = set()
        self._lock = threading.Lock()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    async def subscribe(self) -> AsyncIterator[str]:
        """Yield SSE-formatted payloads until the consumer stops iterating."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        subscriber = (loop, queue)

        with self._lock:
            self._subscribers.add(subscriber)
        try:
            while True:
                yield await queue.get()
        finally:
            with self._lock:
                self._subscribers.discard(subscriber)

    def broadcast(self, event: StatusEvent) -> None:
        payload = f"event: {event.type.value}\ndata: {json.dumps(event.to_dict())}\n\n"

        with self._lock:
            subscribers = list(self._subscribers)

        for loop, queue in subscribers:
            if loop.is_closed():
                with self._lock:
                    self._subscribers.discard((loop, queue))
                continue
            try:
                loop.call_soon_threadsafe(self._offer, queue, payload)
            except RuntimeError:
                # Loop closed between the check and the call
                with self._lock:
                    self._subscribers.discard((loop, queue))

    @staticmethod
    def _offer(queue: asyncio.Queue, payload: str) -> None:
        if queue.full():
            log.debug("event_dropped_queue_full")
            return
        queue.put_nowait(payload)


def safe_broadcast(broadcaster: StatusBroadcaster, event: StatusEvent) -> None:
    """Broadcast an event, logging and discarding any transport error."""
    try:
        broadcaster.broadcast(event)
    except Exception as e:
        log.warning(
            "broadcast_failed",
            event_type=event.type.value,
            message_id=event.message_id,
            error=str(e),
        )
