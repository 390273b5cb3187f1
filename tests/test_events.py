"""Unit tests for events.py - Event bus and resource events."""

import asyncio
import json

import pytest

from events import (
    KIND_EXTERNAL_SECRET,
    KIND_SECRET_STORE,
    EventBus,
    EventSubscription,
    EventType,
    ResourceEvent,
    kind_filter,
)


def _event(event_type=EventType.MODIFIED, kind=KIND_EXTERNAL_SECRET, name="app"):
    return ResourceEvent(
        event_type=event_type, kind=kind, namespace="default", name=name
    )


class TestResourceEvent:
    """Tests for ResourceEvent."""

    def test_to_sse(self):
        """Test SSE formatting."""
        event = ResourceEvent(
            event_type=EventType.SYNCED,
            kind=KIND_EXTERNAL_SECRET,
            namespace="default",
            name="app",
            data={"target": "app-creds", "wrote": True},
            timestamp="2024-01-01T00:00:00Z",
        )

        sse = event.to_sse()

        assert sse.startswith("event: SYNCED\ndata: ")
        assert sse.endswith("\n\n")
        payload = json.loads(sse.split("data: ", 1)[1])
        assert payload == {
            "event_type": "SYNCED",
            "kind": "ExternalSecret",
            "namespace": "default",
            "name": "app",
            "data": {"target": "app-creds", "wrote": True},
            "timestamp": "2024-01-01T00:00:00Z",
        }

    def test_to_sse_serializes_datetimes(self):
        """Test datetimes in event data are serialized as ISO strings."""
        from datetime import datetime, timezone

        event = _event()
        event.data = {"refresh_time": datetime(2024, 1, 1, tzinfo=timezone.utc)}

        payload = json.loads(event.to_sse().split("data: ", 1)[1])

        assert payload["data"]["refresh_time"] == "2024-01-01T00:00:00+00:00"

    def test_for_external_secret(self):
        """Test building an event from a database row."""
        row = {"namespace": "team-a", "name": "db", "status": "ready"}

        event = ResourceEvent.for_external_secret(EventType.CREATED, row)

        assert event.kind == KIND_EXTERNAL_SECRET
        assert event.key == ("team-a", "db")
        assert event.data == row

    def test_timestamp_default(self):
        """Test events get a UTC timestamp by default."""
        assert _event().timestamp.endswith("Z")


class TestKindFilter:
    """Tests for kind_filter."""

    def test_accepts_listed_kinds(self):
        """Test only listed kinds pass."""
        accept = kind_filter(KIND_SECRET_STORE)
        assert accept(_event(kind=KIND_SECRET_STORE)) is True
        assert accept(_event(kind=KIND_EXTERNAL_SECRET)) is False


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for EventSubscription."""

    async def test_iterates_until_sentinel(self):
        """Test the iterator stops at the None sentinel."""
        queue: asyncio.Queue = asyncio.Queue()
        first, second = _event(name="a"), _event(name="b")
        for item in (first, second, None):
            queue.put_nowait(item)

        received = [event async for event in EventSubscription(queue)]

        assert received == [first, second]

    async def test_applies_filter(self):
        """Test filtered out events are skipped."""
        queue: asyncio.Queue = asyncio.Queue()
        for item in (_event(name="a"), _event(name="b"), None):
            queue.put_nowait(item)

        subscription = EventSubscription(queue, lambda e: e.name == "b")
        received = [event.name async for event in subscription]

        assert received == ["b"]


@pytest.mark.asyncio
class TestEventBus:
    """Tests for EventBus."""

    async def test_publish_to_all_subscribers(self):
        """Test every subscriber receives published events."""
        bus = EventBus()
        _, sub1 = await bus.subscribe()
        _, sub2 = await bus.subscribe()
        event = _event()

        await bus.publish(event)

        assert await sub1.__anext__() is event
        assert await sub2.__anext__() is event

    async def test_subscribe_with_filter(self):
        """Test a subscriber only sees events its filter accepts."""
        bus = EventBus()
        _, subscription = await bus.subscribe(kind_filter(KIND_SECRET_STORE))

        await bus.publish(_event(kind=KIND_EXTERNAL_SECRET))
        await bus.publish(_event(kind=KIND_SECRET_STORE, name="vault"))

        event = await asyncio.wait_for(subscription.__anext__(), timeout=1)
        assert event.name == "vault"

    async def test_unsubscribe_ends_iteration(self):
        """Test unsubscribing terminates the subscriber's iterator."""
        bus = EventBus()
        subscriber_id, subscription = await bus.subscribe()
        assert bus.subscriber_count() == 1

        await bus.unsubscribe(subscriber_id)

        assert bus.subscriber_count() == 0
        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()

    async def test_unsubscribe_unknown_id(self):
        """Test unsubscribing an unknown id is a no-op."""
        bus = EventBus()
        await bus.unsubscribe("missing")
        assert bus.subscriber_count() == 0

    async def test_full_queue_drops_events(self):
        """Test a slow subscriber loses events instead of blocking publishers."""
        bus = EventBus(queue_size=1)
        _, subscription = await bus.subscribe()

        await bus.publish(_event(name="first"))
        await bus.publish(_event(name="second"))

        assert (await subscription.__anext__()).name == "first"

    async def test_unsubscribe_with_full_queue(self):
        """Test the sentinel is delivered even when the queue is full."""
        bus = EventBus(queue_size=1)
        subscriber_id, subscription = await bus.subscribe()
        await bus.publish(_event())

        await bus.unsubscribe(subscriber_id)

        with pytest.raises(StopAsyncIteration):
            await subscription.__anext__()
