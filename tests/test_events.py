"""Tests for the event bus."""

from kidsafe_agent.events import RULES_CHANGED, SYNC_APPLIED, EventBus


class TestEventBus:
    """Tests for EventBus and Subscription."""

    def test_publish_reaches_all_subscribers(self):
        bus = EventBus()
        first = bus.subscribe()
        second = bus.subscribe()
        bus.publish(RULES_CHANGED, action="add")
        assert first.get(timeout=1).data == {"action": "add"}
        assert second.get(timeout=1).type == RULES_CHANGED

    def test_type_filter(self):
        bus = EventBus()
        sync_only = bus.subscribe(SYNC_APPLIED)
        bus.publish(RULES_CHANGED)
        bus.publish(SYNC_APPLIED, path="p")
        assert [e.type for e in sync_only.drain()] == [SYNC_APPLIED]

    def test_full_queue_drops_oldest(self):
        bus = EventBus(queue_size=2)
        sub = bus.subscribe()
        for i in range(4):
            bus.publish(RULES_CHANGED, n=i)
        assert [e.data["n"] for e in sub.drain()] == [2, 3]
        assert sub.dropped == 2

    def test_get_times_out(self):
        sub = EventBus().subscribe()
        assert sub.get(timeout=0.01) is None

    def test_close_unsubscribes(self):
        bus = EventBus()
        sub = bus.subscribe()
        assert bus.subscriber_count == 1
        sub.close()
        assert bus.subscriber_count == 0
        bus.publish(RULES_CHANGED)
        assert sub.drain() == []
