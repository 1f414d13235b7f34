from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .bus import RealtimeBus

logger = logging.getLogger(__name__)

EVENT_CREATED = "created"
EVENT_UPDATED = "updated"
EVENT_DELETED = "deleted"
EVENT_TYPES = (EVENT_CREATED, EVENT_UPDATED, EVENT_DELETED)


@dataclass
class BookingEvent:
    event_type: str
    booking: Dict[str, Any]

    @property
    def booking_id(self) -> Optional[int]:
        return self.booking.get("id")

    def viewers(self) -> set[int]:
        ids = set()
        for key in ("client_id", "service_provider_id"):
            value = self.booking.get(key)
            if value is not None:
                ids.add(int(value))
        return ids

    def to_envelope(self, viewer_id: int) -> Dict[str, Any]:
        return {
            "v": 1,
            "type": f"booking.{self.event_type}",
            "topic": topic_for(viewer_id),
            "payload": {"event_type": self.event_type, "booking": self.booking},
        }

    @classmethod
    def from_envelope(cls, envelope: Dict[str, Any]) -> Optional["BookingEvent"]:
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            return None
        event_type = payload.get("event_type")
        booking = payload.get("booking")
        if event_type not in EVENT_TYPES or not isinstance(booking, dict):
            return None
        return cls(event_type=event_type, booking=booking)


def topic_for(viewer_id: int) -> str:
    return f"bookings:{int(viewer_id)}"


Subscriber = Callable[[BookingEvent], None]


class BookingEventHub:
    """Delivers booking change events to the parties of each booking.

    Subscriptions are keyed by viewer id; an event reaches a subscriber only
    when the viewer is the booking's client or service provider. Events are
    mirrored to the Redis bus so viewers connected to other processes see
    them too.
    """

    def __init__(self, bus: Optional[RealtimeBus] = None) -> None:
        self._bus = bus
        self._lock = threading.Lock()
        self._subscribers: Dict[int, List[Subscriber]] = {}

    def subscribe(self, viewer_id: int, callback: Subscriber) -> Callable[[], None]:
        viewer_id = int(viewer_id)
        with self._lock:
            self._subscribers.setdefault(viewer_id, []).append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(viewer_id)
                if not callbacks:
                    return
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[viewer_id]

        return _unsubscribe

    def subscriber_count(self, viewer_id: int) -> int:
        with self._lock:
            return len(self._subscribers.get(int(viewer_id), []))

    def publish(self, event: BookingEvent, *, mirror: bool = True) -> int:
        """Fan out locally and, when ``mirror`` is set, onto the bus. Returns local deliveries."""
        delivered = 0
        for viewer_id in event.viewers():
            delivered += self.deliver_local(viewer_id, event)
            if mirror and self._bus is not None:
                self._bus.publish_topic(topic_for(viewer_id), event.to_envelope(viewer_id))
        return delivered

    def deliver_local(self, viewer_id: int, event: BookingEvent) -> int:
        if int(viewer_id) not in event.viewers():
            return 0
        with self._lock:
            callbacks = list(self._subscribers.get(int(viewer_id), []))
        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception:
                # A broken subscriber must not block the others.
                logger.exception(
                    "booking_event_subscriber_failed viewer=%s booking=%s",
                    viewer_id,
                    event.booking_id,
                )
        return delivered

    async def handle_bus_message(self, topic: str, envelope: Dict[str, Any]) -> None:
        """Bus consumer entry point: re-deliver a remote event to local subscribers."""
        if not topic.startswith("bookings:"):
            return
        try:
            viewer_id = int(topic.split(":", 1)[1])
        except ValueError:
            return
        event = BookingEvent.from_envelope(envelope)
        if event is not None:
            self.deliver_local(viewer_id, event)
