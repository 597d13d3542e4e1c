"""Tests for the in-memory topic pub/sub.

Tests cover:
- Delivery only to subscribers of the published topics
- Single delivery per handler across overlapping topics
- Per-handler ordering
- Exclusion, unsubscribe and close semantics
"""

import pytest

from clinicsync.errors import BrokerUnavailable
from clinicsync.sync.events import OutboundEvent
from clinicsync.sync.pubsub import InMemoryPubSub
from tests.conftest import RecordingHandler


def _event(n: int) -> OutboundEvent:
    return OutboundEvent("sync_event", {"n": n})


class TestPublish:
    """Tests for topic routing."""

    @pytest.mark.asyncio
    async def test_only_subscribers_receive(self, pubsub: InMemoryPubSub):
        inside, outside = RecordingHandler(), RecordingHandler()
        await pubsub.subscribe("entity:patient:1", inside)
        await pubsub.subscribe("entity:patient:2", outside)

        dispatched = await pubsub.publish("entity:patient:1", _event(1))
        await pubsub.flush()

        assert dispatched == 1
        assert [e.data["n"] for e in inside.events] == [1]
        assert outside.events == []

    @pytest.mark.asyncio
    async def test_overlapping_topics_deliver_once(self, pubsub: InMemoryPubSub):
        """A handler in both the entity room and a role room gets one copy."""
        handler = RecordingHandler()
        await pubsub.subscribe("entity:visit:9", handler)
        await pubsub.subscribe("role:NURSE", handler)

        await pubsub.publish(["entity:visit:9", "role:NURSE"], _event(1))
        await pubsub.flush()

        assert len(handler.events) == 1

    @pytest.mark.asyncio
    async def test_order_is_preserved_per_handler(self, pubsub: InMemoryPubSub):
        handler = RecordingHandler()
        await pubsub.subscribe("general", handler)

        for n in range(20):
            await pubsub.publish("general", _event(n))
        await pubsub.flush()

        assert [e.data["n"] for e in handler.events] == list(range(20))

    @pytest.mark.asyncio
    async def test_exclude_skips_sender(self, pubsub: InMemoryPubSub):
        sender, other = RecordingHandler(), RecordingHandler()
        await pubsub.subscribe("general", sender)
        await pubsub.subscribe("general", other)

        await pubsub.publish("general", _event(1), exclude=(sender,))
        await pubsub.flush()

        assert sender.events == []
        assert len(other.events) == 1

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self, pubsub: InMemoryPubSub):
        async def broken(event: OutboundEvent) -> None:
            raise RuntimeError("socket gone")

        healthy = RecordingHandler()
        await pubsub.subscribe("general", broken)
        await pubsub.subscribe("general", healthy)

        await pubsub.publish("general", _event(1))
        await pubsub.publish("general", _event(2))
        await pubsub.flush()

        assert [e.data["n"] for e in healthy.events] == [1, 2]


class TestSubscriptions:
    """Tests for subscribe/unsubscribe bookkeeping."""

    @pytest.mark.asyncio
    async def test_subscribe_twice_is_noop(self, pubsub: InMemoryPubSub):
        handler = RecordingHandler()
        await pubsub.subscribe("general", handler)
        await pubsub.subscribe("general", handler)

        assert pubsub.subscribers("general") == [handler]

    @pytest.mark.asyncio
    async def test_unsubscribed_handler_receives_nothing(self, pubsub: InMemoryPubSub):
        handler = RecordingHandler()
        await pubsub.subscribe("entity:patient:1", handler)
        await pubsub.subscribe("general", handler)
        await pubsub.unsubscribe("entity:patient:1", handler)

        await pubsub.publish("entity:patient:1", _event(1))
        await pubsub.flush()

        assert handler.events == []
        assert pubsub.topics_of(handler) == {"general"}

    @pytest.mark.asyncio
    async def test_unsubscribe_all(self, pubsub: InMemoryPubSub):
        handler = RecordingHandler()
        await pubsub.subscribe("general", handler)
        await pubsub.subscribe("role:ADMIN", handler)

        await pubsub.unsubscribe_all(handler)

        assert pubsub.topics_of(handler) == set()
        assert await pubsub.publish(["general", "role:ADMIN"], _event(1)) == 0


class TestClose:
    """Tests for shutdown behavior."""

    @pytest.mark.asyncio
    async def test_close_drains_pending_events(self):
        bus = InMemoryPubSub()
        handler = RecordingHandler()
        await bus.subscribe("general", handler)
        await bus.publish("general", _event(1))
        await bus.publish("general", _event(2))

        await bus.close()

        assert [e.data["n"] for e in handler.events] == [1, 2]

    @pytest.mark.asyncio
    async def test_publish_after_close_raises(self):
        bus = InMemoryPubSub()
        await bus.close()

        with pytest.raises(BrokerUnavailable):
            await bus.publish("general", _event(1))

    @pytest.mark.asyncio
    async def test_full_mailbox_drops_event(self):
        bus = InMemoryPubSub(mailbox_size=1)
        handler = RecordingHandler()
        await bus.subscribe("general", handler)

        # No await between publishes, so the writer task cannot drain yet
        first = await bus.publish("general", _event(1))
        second = await bus.publish("general", _event(2))
        await bus.close()

        assert first == 1
        assert second == 0
        assert [e.data["n"] for e in handler.events] == [1]
