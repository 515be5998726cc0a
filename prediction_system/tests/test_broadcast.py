"""
Tests for event construction and in-memory fan-out
"""
import asyncio

import pytest

from prediction_system.realtime.events import (
    EventNotifier,
    PredictionEventType,
    build_event,
    get_notifier,
    set_notifier,
    topic_for,
)
from prediction_system.realtime.in_memory_adapter import InMemoryAdapter
from prediction_system.services.session_coordinator import SessionCoordinator


def sample_event(session_id=1, payload=None):
    return build_event(PredictionEventType.ADDED, "test", session_id, payload or {"username": "alice"})


class TestBuildEvent:

    def test_shape(self):
        event = sample_event()
        assert event["type"] == "prediction-added"
        assert event["channel"] == "test"
        assert event["session_id"] == 1
        assert event["payload"] == {"username": "alice"}
        assert len(event["event_hash"]) == 64
        assert event["emitted_at"]

    def test_hash_ignores_emission_time(self):
        assert sample_event()["event_hash"] == sample_event()["event_hash"]

    def test_hash_covers_content(self):
        assert sample_event(session_id=1)["event_hash"] != sample_event(session_id=2)["event_hash"]
        assert sample_event(payload={"username": "bob"})["event_hash"] != sample_event()["event_hash"]

    def test_topic(self):
        assert topic_for("shroud") == "channel:shroud"


class TestInMemoryAdapter:

    async def test_publish_reaches_registered_subscribers(self):
        adapter = InMemoryAdapter()
        first = adapter.register("channel:test")
        second = adapter.register("channel:test")
        other = adapter.register("channel:other")

        await adapter.publish("channel:test", sample_event())

        assert first.qsize() == 1
        assert second.qsize() == 1
        assert other.qsize() == 0

    async def test_subscribe_yields_parsed_messages_until_close(self):
        adapter = InMemoryAdapter()
        received = []

        async def listen():
            async for message in adapter.subscribe("channel:test"):
                received.append(message)

        listener = asyncio.create_task(listen())
        while adapter.subscriber_count("channel:test") == 0:
            await asyncio.sleep(0)

        await adapter.publish("channel:test", sample_event(session_id=1))
        await adapter.publish("channel:test", sample_event(session_id=2))
        await adapter.close()
        await asyncio.wait_for(listener, timeout=1)

        assert [m["session_id"] for m in received] == [1, 2]
        assert adapter.subscriber_count("channel:test") == 0

    async def test_full_queue_drops_oldest(self):
        adapter = InMemoryAdapter(max_queue_size=2)
        queue = adapter.register("channel:test")

        for session_id in (1, 2, 3):
            await adapter.publish("channel:test", sample_event(session_id=session_id))

        drained = []
        while not queue.empty():
            drained.append(queue.get_nowait())
        assert len(drained) == 2
        assert '"session_id":2' in drained[0]
        assert '"session_id":3' in drained[1]

    async def test_rejects_incomplete_messages(self):
        adapter = InMemoryAdapter()
        with pytest.raises(ValueError):
            await adapter.publish("channel:test", {"type": "prediction-added"})

    async def test_unregister_last_subscriber_drops_topic(self):
        adapter = InMemoryAdapter()
        queue = adapter.register("channel:test")
        adapter.unregister("channel:test", queue)
        adapter.unregister("channel:missing", queue)
        assert adapter.subscriber_count("channel:test") == 0


class TestEventNotifier:

    async def test_notify_all_counts_deliveries(self):
        notifier = EventNotifier(InMemoryAdapter())
        events = [sample_event(session_id=1), {"channel": "test"}]

        assert await notifier.notify_all(events) == 1

    async def test_default_notifier_is_shared(self):
        set_notifier(None)
        assert get_notifier() is get_notifier()
        assert isinstance(get_notifier().adapter, InMemoryAdapter)

    async def test_viewers_receive_transitions_in_order(self, db, owner):
        adapter = InMemoryAdapter()
        queue = adapter.register(topic_for("test"))
        coordinator = SessionCoordinator(db, notifier=EventNotifier(adapter))

        first = await coordinator.open("test", owner)
        first_id = first.session.id
        await coordinator.submit("test", "alice", "13-9")
        second = await coordinator.open("test", owner)

        received = []
        async for message in _drain_now(adapter, queue):
            received.append(message)

        assert [m["type"] for m in received] == [
            "prediction-opened",
            "prediction-added",
            "prediction-cancelled",
            "prediction-opened",
        ]
        assert received[2]["session_id"] == first_id
        assert received[2]["payload"]["superseded_by"] == second.session.id
        assert received[3]["payload"]["cancelled_session_id"] == first_id


async def _drain_now(adapter, queue):
    """Yield what is queued right now, then stop."""
    queue.put_nowait(None)
    async for message in adapter.drain(queue):
        yield message
