from types import SimpleNamespace

import pytest

from marketplace.models import BookingStatus
from marketplace.services.review_gate import is_reviewable


def _booking(status, **kwargs):
    data = {"id": 7, "service_id": "svc-1", "status": status}
    data.update(kwargs)
    return data


@pytest.mark.parametrize("status", ["awaiting-review", "completed", BookingStatus.COMPLETED])
def test_finished_booking_without_review_is_reviewable(status):
    assert is_reviewable(_booking(status), []) is True


@pytest.mark.parametrize("status", ["pending", "pending-buyer", "confirmed", "disputed", "refunded", "bogus", None])
def test_unfinished_booking_is_not_reviewable(status):
    assert is_reviewable(_booking(status), []) is False


def test_matching_review_closes_the_gate():
    review = {"service_id": "svc-1", "transaction_id": 7}
    assert is_reviewable(_booking("completed"), [review]) is False


def test_review_must_match_service_and_transaction():
    reviews = [
        {"service_id": "svc-1", "transaction_id": 8},
        {"service_id": "svc-2", "transaction_id": 7},
    ]
    assert is_reviewable(_booking("completed"), reviews) is True


def test_accepts_orm_style_objects():
    booking = SimpleNamespace(id=3, service_id=12, status=BookingStatus.AWAITING_REVIEW)
    review = SimpleNamespace(service_id="12", transaction_id=3)
    assert is_reviewable(booking, []) is True
    assert is_reviewable(booking, [review]) is False
