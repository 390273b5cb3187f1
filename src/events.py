"""
Event Streaming - In-memory pub/sub for declaration and sync events.

Change notifications (a store, credential record or external secret was
created, modified or deleted) flow into the controller through the bus, and
sync results flow out of it to watchers. Watchers get Server-Sent Events
(SSE) semantics similar to the Kubernetes watch API.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

KIND_EXTERNAL_SECRET = "ExternalSecret"
KIND_SECRET_STORE = "SecretStore"
KIND_CLUSTER_SECRET_STORE = "ClusterSecretStore"
KIND_CREDENTIAL_RECORD = "CredentialRecord"


def _json_default(obj: Any) -> str:
    """JSON serializer for objects not handled by default json encoder."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class EventType(Enum):
    """Types of events."""

    CREATED = "CREATED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    SYNCED = "SYNCED"
    SYNC_FAILED = "SYNC_FAILED"


@dataclass
class ResourceEvent:
    """
    Event about one declared object.

    ``namespace`` is None for cluster-scoped stores. ``data`` never carries
    secret values: for external secrets it holds the declaration row with
    its status, for sync events a summary of the outcome.
    """

    event_type: EventType
    kind: str
    namespace: Optional[str]
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)

    @property
    def key(self) -> Tuple[Optional[str], str]:
        return (self.namespace, self.name)

    def to_sse(self) -> str:
        """
        Format the event as an SSE message.

        Returns:
            SSE-formatted string with event type and JSON data lines.
        """
        data = {
            "event_type": self.event_type.value,
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        json_data = json.dumps(data, default=_json_default)
        return f"event: {self.event_type.value}\ndata: {json_data}\n\n"

    @classmethod
    def for_external_secret(
        cls,
        event_type: EventType,
        row: Dict[str, Any],
    ) -> "ResourceEvent":
        """
        Create an event from an external secret row.

        Args:
            event_type: The type of event.
            row: External secret dict from the database.
        """
        return cls(
            event_type=event_type,
            kind=KIND_EXTERNAL_SECRET,
            namespace=row["namespace"],
            name=row["name"],
            data=row,
        )


def kind_filter(*kinds: str) -> Callable[[ResourceEvent], bool]:
    """Build a subscription filter accepting only the given kinds."""
    accepted = set(kinds)
    return lambda event: event.kind in accepted


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[["ResourceEvent"], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator["ResourceEvent"]:
        return self

    async def __anext__(self) -> "ResourceEvent":
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped with a warning so a
    slow watcher cannot hold up the controller; the controller's periodic
    resync covers any change notification lost this way.
    """

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: ResourceEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

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
                    f"Dropped {event.event_type.value} event for "
                    f"{event.kind} {event.name} (subscriber {subscriber_id}): "
                    "queue full"
                )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[ResourceEvent], bool]] = None,
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

        logger.info(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates, dropping the oldest pending event if the
        queue is full.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is None:
            return

        if queue.full():
            queue.get_nowait()
        queue.put_nowait(None)
        logger.info(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
