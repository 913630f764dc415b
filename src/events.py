"""
Watch Events - In-memory pub/sub for object change events.

Stores publish an ObjectEvent for every successful write; controllers
subscribe and map events to reconcile requests. Similar to the Kubernetes
watch API, delivery is best-effort: events may be dropped for slow
subscribers, so reconcilers must never depend on seeing every event.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from objects import Object, ResourceKind, utc_now

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of object events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class ObjectEvent:
    """Event emitted when an object changes."""

    event_type: EventType
    kind: ResourceKind
    object: Object
    old_object: Optional[Object] = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_log(self) -> str:
        """Format the event as a single log line."""
        return f"{self.event_type.value} {self.kind} {self.object.key}"


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ObjectEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["ObjectEvent"]:
        return self

    async def __anext__(self) -> "ObjectEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for object events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking.  Full queues cause events to be dropped to prevent
    back-pressure on the store.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ObjectEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Events are dropped for subscribers whose queues are full.

        Args:
            event: The event to publish.
        """
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event for subscriber {subscriber_id}: queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ObjectEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                pass
            logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
