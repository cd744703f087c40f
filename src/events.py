"""
Event Streaming - In-memory pub/sub for reconciliation events.

Publishes the outcome of every reconciliation pass and every halt/resume
so that the HTTP surface can stream them as Server-Sent Events.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class EventType(Enum):
    """Types of reconciliation events."""

    RECONCILED = "RECONCILED"
    RETRYING = "RETRYING"
    HALTED = "HALTED"
    RESUMED = "RESUMED"


@dataclass
class ReconcileEvent:
    """Event emitted when a scope is reconciled, retried, halted, or resumed."""

    event_type: EventType
    scope_key: str
    data: Dict[str, Any]
    timestamp: str

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        payload = {
            "event_type": self.event_type.value,
            "scope_key": self.scope_key,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(payload, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def create(
        cls,
        event_type: EventType,
        scope_key: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> "ReconcileEvent":
        """Create an event stamped with the current UTC time."""
        return cls(
            event_type=event_type,
            scope_key=scope_key,
            data=data or {},
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
        )


class EventSubscription:
    """
    One watcher's view of the controller's reconcile events.

    Iterates events delivered to the watcher's queue, skipping those the
    filter rejects (the HTTP surface filters on scope key). Iteration ends
    when the bus removes the watcher.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ReconcileEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["ReconcileEvent"]:
        return self

    async def __anext__(self) -> "ReconcileEvent":
        while True:
            event = await self._queue.get()
            if event is None:
                raise StopAsyncIteration
            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    Fans reconcile outcomes out to SSE watchers.

    The controller publishes from its worker loop, so publishing never
    waits: each watcher has a bounded queue and a watcher that falls behind
    loses the newest events rather than delaying the next pass. Watchers
    recover by reading the scope status endpoint.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._watchers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ReconcileEvent) -> None:
        """Deliver an event to every watcher with room in its queue."""
        async with self._lock:
            watchers = list(self._watchers.items())

        for watcher_id, queue in watchers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Watcher {watcher_id} is behind, dropped "
                    f"{event.event_type.value} event for {event.scope_key}"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ReconcileEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """Register a watcher; returns its id and event iterator."""
        watcher_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._watchers[watcher_id] = queue

        logger.info(f"Event watcher connected: {watcher_id}")
        return watcher_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, watcher_id: str) -> None:
        """Remove a watcher and end its iterator."""
        async with self._lock:
            queue = self._watchers.pop(watcher_id, None)
        if queue is None:
            return

        # A full queue is drained so the end marker always fits
        while queue.full():
            queue.get_nowait()
        queue.put_nowait(None)
        logger.info(f"Event watcher disconnected: {watcher_id}")

    def subscriber_count(self) -> int:
        return len(self._watchers)
