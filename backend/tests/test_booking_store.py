from decimal import Decimal

import pytest

from marketplace.crud.crud_booking import BookingStore
from marketplace.models import BookingStatus
from marketplace.utils.errors import NotFound, StaleState, ValidationError


def _create(store, users, **kwargs):
    params = dict(
        client_id=users["client"].id,
        service_provider_id=users["provider"].id,
        service_id="svc-1",
        service_title="Wedding set",
        hourly_rate=Decimal("50"),
        estimated_hours=Decimal("2"),
    )
    params.update(kwargs)
    return store.create(**params)


def test_create_computes_total_and_starts_pending(store, users):
    booking = _create(store, users)
    assert booking.status == BookingStatus.PENDING
    assert booking.total_estimate == Decimal("100.00")
    assert booking.currency == "sgd"
    assert booking.version == 1
    assert store.get_by_id(booking.id).service_title == "Wedding set"


def test_create_rejects_non_positive_hours(store, users):
    with pytest.raises(ValidationError) as exc:
        _create(store, users, estimated_hours=Decimal("0"))
    assert exc.value.field_errors == {"estimated_hours": "not_positive"}


def test_get_missing_booking_raises_not_found(store):
    with pytest.raises(NotFound):
        store.get_by_id(999)
    with pytest.raises(NotFound):
        store.update(999, {"notes": "x"})


def test_update_bumps_version(store, users):
    booking = _create(store, users)
    updated = store.update(booking.id, {"notes": "bring cables"}, expected_version=booking.version)
    assert updated.notes == "bring cables"
    assert updated.version == booking.version + 1


def test_update_rejects_identity_fields(store, users):
    booking = _create(store, users)
    with pytest.raises(ValidationError) as exc:
        store.update(booking.id, {"client_id": users["stranger"].id, "service_id": "other"})
    assert exc.value.field_errors == {"client_id": "immutable", "service_id": "immutable"}
    assert store.get_by_id(booking.id).client_id == users["client"].id


def test_update_rejects_unknown_fields(store, users):
    booking = _create(store, users)
    with pytest.raises(ValidationError):
        store.update(booking.id, {"colour": "red"})


def test_stale_version_is_rejected(store, users):
    booking = _create(store, users)
    store.update(booking.id, {"notes": "first"}, expected_version=booking.version)
    with pytest.raises(StaleState) as exc:
        store.update(
            booking.id,
            {"status": BookingStatus.DECLINED},
            expected_version=booking.version,
        )
    assert exc.value.attempted == "declined"
    fresh = store.get_by_id(booking.id)
    assert fresh.notes == "first"
    assert fresh.status == BookingStatus.PENDING


def test_expected_status_guards_write(store, users):
    booking = _create(store, users)
    with pytest.raises(StaleState):
        store.update(booking.id, {"notes": "x"}, expected_status=BookingStatus.CONFIRMED)


def test_claim_is_exclusive_until_released(store, users):
    booking = _create(store, users)
    claimed = store.claim(booking.id, "authorize", booking.version, booking.status)
    assert claimed.pending_transition == "authorize"

    with pytest.raises(StaleState):
        store.update(booking.id, {"status": BookingStatus.CANCELLED}, unclaimed=True)
    with pytest.raises(StaleState):
        store.claim(booking.id, "authorize", claimed.version, claimed.status)

    assert store.release(booking.id, claimed.version) is True
    released = store.get_by_id(booking.id)
    assert released.pending_transition is None
    assert store.release(booking.id, claimed.version) is False


def test_expired_claim_can_be_taken_over(session_factory, hub, users):
    store = BookingStore(session_factory=session_factory, hub=hub, claim_ttl_seconds=-1)
    booking = _create(store, users)
    claimed = store.claim(booking.id, "capture", booking.version, booking.status)
    again = store.claim(booking.id, "capture", claimed.version, claimed.status)
    assert again.version == claimed.version + 1


def test_list_by_party(store, users):
    first = _create(store, users)
    second = _create(store, users, service_id="svc-2")
    assert [b.id for b in store.list_by_client(users["client"].id)] == [second.id, first.id]
    assert len(store.list_by_provider(users["provider"].id)) == 2
    assert store.list_by_client(users["stranger"].id) == []


def test_subscription_only_reaches_parties(store, users):
    seen = {"client": [], "provider": [], "stranger": []}
    unsubscribe = {
        name: store.subscribe(users[name].id, seen[name].append) for name in seen
    }

    booking = _create(store, users)
    store.update(booking.id, {"notes": "hello"})

    assert [e.event_type for e in seen["client"]] == ["created", "updated"]
    assert [e.event_type for e in seen["provider"]] == ["created", "updated"]
    assert seen["stranger"] == []
    assert seen["client"][-1].booking["notes"] == "hello"

    unsubscribe["client"]()
    store.update(booking.id, {"notes": "again"})
    assert len(seen["client"]) == 2
    assert len(seen["provider"]) == 3


def test_claims_do_not_publish(store, users):
    booking = _create(store, users)
    events = []
    store.subscribe(users["client"].id, events.append)
    claimed = store.claim(booking.id, "authorize", booking.version, booking.status)
    store.release(booking.id, claimed.version)
    assert events == []


def test_recent_action_window(store, users):
    booking = _create(store, users)
    store.record_action(booking.id, users["client"].id, "cancelled", "abc")
    assert store.find_recent_action(booking.id, users["client"].id, "cancelled", "abc", 10)
    assert not store.find_recent_action(booking.id, users["client"].id, "cancelled", "other", 10)
    assert not store.find_recent_action(booking.id, users["provider"].id, "cancelled", "abc", 10)
    assert not store.find_recent_action(booking.id, users["client"].id, "cancelled", "abc", -1)
