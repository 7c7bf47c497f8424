"""In-process event emission with one queue per subscriber."""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

# Event types
RULES_CHANGED = "rules_changed"
HOSTS_UPDATED = "hosts_updated"
HOSTS_WRITE_FAILED = "hosts_write_failed"
SYNC_APPLIED = "sync_applied"
TIME_RULES_CHANGED = "time_rules_changed"
ACCESS_STATE_CHANGED = "access_state_changed"

DEFAULT_QUEUE_SIZE = 100

logger = logging.getLogger(__name__)


@dataclass
class Event:
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


class Subscription:
    """A subscriber's view of the bus: a bounded queue of events."""

    def __init__(self, bus: "EventBus", types: Optional[set[str]], maxsize: int) -> None:
        self._bus = bus
        self.types = types
        self.queue: "queue.Queue[Event]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, event: Event) -> bool:
        return self.types is None or event.type in self.types

    def offer(self, event: Event) -> None:
        """Enqueue without blocking; the oldest event is dropped when full."""
        while True:
            try:
                self.queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self.queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None if none arrived within timeout."""
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Event]:
        events = []
        while True:
            try:
                events.append(self.queue.get_nowait())
            except queue.Empty:
                return events

    def close(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """Fan-out of agent events; publishers never block on slow subscribers."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, *types: str) -> Subscription:
        """Subscribe to the given event types, or to all events when none are given."""
        subscription = Subscription(self, set(types) or None, self.queue_size)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event_type: str, **data: Any) -> Event:
        event = Event(event_type, data)
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            if subscription.wants(event):
                subscription.offer(event)
        logger.debug(f"Event {event_type} delivered to {len(subscribers)} subscribers")
        return event

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
