"""Keep a local, id-indexed view of entities in sync with change events.

One generic index replaces per-entity merge code: snapshot with
:meth:`EntityIndex.load`, then feed every ``(event_type, entity)`` through
:meth:`EntityIndex.apply`. Created/updated upsert by id, deleted removes.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Generic, Hashable, Iterable, List, Optional, TypeVar

from .events import EVENT_CREATED, EVENT_DELETED, EVENT_UPDATED, BookingEvent

T = TypeVar("T")


def default_key(entity: Any) -> Hashable:
    if isinstance(entity, dict):
        return entity["id"]
    return getattr(entity, "id")


class EntityIndex(Generic[T]):
    def __init__(
        self,
        key: Callable[[T], Hashable] = default_key,
        accept: Optional[Callable[[T], bool]] = None,
        order_by: Optional[Callable[[T], Any]] = None,
        reverse: bool = True,
    ) -> None:
        self._key = key
        self._accept = accept
        self._order_by = order_by
        self._reverse = reverse
        self._items: Dict[Hashable, T] = {}

    def load(self, entities: Iterable[T]) -> None:
        self._items = {}
        for entity in entities:
            if self._accept is None or self._accept(entity):
                self._items[self._key(entity)] = entity

    def apply(self, event_type: str, entity: T) -> bool:
        """Reconcile one change. Returns True when the index changed."""
        key = self._key(entity)
        if event_type == EVENT_DELETED:
            return self._items.pop(key, None) is not None
        if event_type not in (EVENT_CREATED, EVENT_UPDATED):
            raise ValueError(f"unknown event type: {event_type}")
        if self._accept is not None and not self._accept(entity):
            # An update can move an entity out of this view.
            return self._items.pop(key, None) is not None
        if self._items.get(key) == entity:
            return False
        self._items[key] = entity
        return True

    def get(self, key: Hashable) -> Optional[T]:
        return self._items.get(key)

    def values(self) -> List[T]:
        items = list(self._items.values())
        if self._order_by is not None:
            items.sort(key=self._order_by, reverse=self._reverse)
        return items

    def __contains__(self, key: Hashable) -> bool:
        return key in self._items

    def __len__(self) -> int:
        return len(self._items)


class ViewerBookings:
    """The two booking lists a viewer sees: made as client, received as provider."""

    def __init__(self, viewer_id: int) -> None:
        self.viewer_id = int(viewer_id)
        order = lambda b: (b.get("created_at") or "", b["id"])  # noqa: E731
        self.mine: EntityIndex[dict] = EntityIndex(
            accept=lambda b: int(b["client_id"]) == self.viewer_id, order_by=order
        )
        self.received: EntityIndex[dict] = EntityIndex(
            accept=lambda b: int(b["service_provider_id"]) == self.viewer_id, order_by=order
        )

    def load(self, bookings: Iterable[dict]) -> None:
        bookings = list(bookings)
        self.mine.load(bookings)
        self.received.load(bookings)

    def apply(self, event: BookingEvent) -> bool:
        changed_mine = self.mine.apply(event.event_type, event.booking)
        changed_received = self.received.apply(event.event_type, event.booking)
        return changed_mine or changed_received

    def stats(self) -> Dict[str, int]:
        mine = self.mine.values()
        return {
            "total": len(mine),
            "pending": sum(1 for b in mine if b.get("status") == "pending"),
            "confirmed": sum(1 for b in mine if b.get("status") == "confirmed"),
            "completed": sum(1 for b in mine if b.get("status") == "completed"),
        }
