from typing import Any, Iterable

from ..models.booking_status import BookingStatus

REVIEWABLE_STATUSES = frozenset({BookingStatus.AWAITING_REVIEW, BookingStatus.COMPLETED})


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def is_reviewable(booking: Any, existing_reviews: Iterable[Any]) -> bool:
    """True when the booking has finished work and nobody has reviewed it yet.

    Accepts ORM rows or plain dicts for both arguments. A review matches when
    its ``service_id`` and ``transaction_id`` equal the booking's service and id.
    """
    status = _field(booking, "status")
    if status is None:
        return False
    try:
        status = BookingStatus(status)
    except ValueError:
        return False
    if status not in REVIEWABLE_STATUSES:
        return False
    service_id = str(_field(booking, "service_id"))
    booking_id = _field(booking, "id")
    for review in existing_reviews:
        if str(_field(review, "service_id")) == service_id and _field(review, "transaction_id") == booking_id:
            return False
    return True
