from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from marketplace.crud.crud_booking import BookingStore
from marketplace.crud.crud_review import ReviewRepository
from marketplace.crud.crud_user import UserDirectory
from marketplace.models import BookingStatus, UserType
from marketplace.schemas import BookingCreate
from marketplace.services.booking_state_machine import BookingStateMachine
from marketplace.services.conversation_bridge import SqlConversationBridge
from marketplace.utils.errors import (
    AccessDenied,
    InvalidPaymentState,
    InvalidTransition,
    NotFound,
    PaymentGatewayError,
    StaleState,
    ValidationError,
)

DUE = datetime(2026, 12, 1, 18, 0)


def _create(machine, users, rate="50", hours="2"):
    return machine.create_booking(
        users["client"].id,
        BookingCreate(
            service_provider_id=users["provider"].id,
            service_id="svc-1",
            service_title="DJ set",
            hourly_rate=Decimal(rate),
            estimated_hours=Decimal(hours),
        ),
    )


def _proposed(machine, users):
    booking = _create(machine, users)
    return machine.propose(booking.id, users["provider"].id, Decimal("3"), DUE, Decimal("150"))


def _confirmed(machine, users):
    booking = _proposed(machine, users)
    return machine.confirm(booking.id, users["client"].id)


def _awaiting_review(machine, users):
    booking = _confirmed(machine, users)
    return machine.mark_awaiting_review(booking.id, users["provider"].id)


def _machine_with_store(session_factory, store, stripe, **kwargs):
    return BookingStateMachine(
        store=store,
        ledger=stripe.gateway(),
        users=UserDirectory(session_factory),
        reviews=ReviewRepository(session_factory),
        conversations=SqlConversationBridge(session_factory),
        **kwargs,
    )


# ── happy path ───────────────────────────────────────────────────────────


def test_proposal_then_confirm_holds_proposed_total(machine, users, stripe):
    booking = _create(machine, users)
    assert booking.status == BookingStatus.PENDING
    assert booking.total_estimate == Decimal("100.00")

    proposed = machine.propose(booking.id, users["provider"].id, Decimal("3"), DUE, Decimal("150"))
    assert proposed.status == BookingStatus.PENDING_BUYER
    assert proposed.proposed_hours == Decimal("3.00")
    assert proposed.proposed_due_date == DUE
    assert proposed.amount_due == Decimal("150.00")

    outcome = machine.apply(booking.id, users["client"].id, "confirmed")
    assert outcome.booking.status == BookingStatus.CONFIRMED
    assert outcome.booking.payment_intent_id == outcome.authorization.payment_intent_id
    assert outcome.booking.pending_transition is None
    assert outcome.authorization.amount == 15000
    assert outcome.authorization.client_secret

    intent = stripe.intents[outcome.authorization.payment_intent_id]
    assert intent["status"] == "requires_capture"
    assert intent["capture_method"] == "manual"
    assert intent["transfer_data"] == {"destination": "acct_123"}
    assert intent["application_fee_amount"] == 750
    assert stripe.calls["authorize"] == 1


def test_completion_captures_hold_and_opens_review(machine, users, stripe):
    booking = _awaiting_review(machine, users)
    assert booking.status == BookingStatus.AWAITING_REVIEW

    outcome = machine.apply(booking.id, users["client"].id, BookingStatus.COMPLETED)
    assert outcome.booking.status == BookingStatus.COMPLETED
    assert outcome.capture.amount_received == 15000
    assert outcome.reviewable is True
    assert stripe.intents[booking.payment_intent_id]["status"] == "succeeded"

    assert machine.is_reviewable(booking.id) is True
    review = machine.record_review(booking.id, users["client"].id, 5, "Great night")
    assert review.transaction_id == booking.id
    assert review.service_id == "svc-1"
    assert machine.is_reviewable(booking.id) is False

    with pytest.raises(InvalidTransition):
        machine.record_review(booking.id, users["client"].id, 4)


def test_work_can_pass_through_in_progress(machine, users):
    booking = _confirmed(machine, users)
    started = machine.start_work(booking.id, users["provider"].id)
    assert started.status == BookingStatus.IN_PROGRESS
    handed_over = machine.mark_awaiting_review(booking.id, users["provider"].id)
    assert handed_over.status == BookingStatus.AWAITING_REVIEW
    assert machine.complete(booking.id, users["client"].id).status == BookingStatus.COMPLETED


def test_dispute_leaves_funds_held(machine, users, stripe):
    booking = _awaiting_review(machine, users)
    disputed = machine.dispute(booking.id, users["client"].id)
    assert disputed.status == BookingStatus.DISPUTED
    assert stripe.calls["capture"] == 0
    assert stripe.intents[booking.payment_intent_id]["status"] == "requires_capture"
    assert machine.is_reviewable(booking.id) is False


def test_provider_can_decline(machine, users):
    booking = _create(machine, users)
    declined = machine.decline(booking.id, users["provider"].id)
    assert declined.status == BookingStatus.DECLINED
    with pytest.raises(InvalidTransition):
        machine.propose(booking.id, users["provider"].id, Decimal("1"), DUE)


# ── creation ─────────────────────────────────────────────────────────────


def test_create_rejects_self_booking_and_non_providers(machine, users):
    with pytest.raises(ValidationError):
        machine.create_booking(
            users["provider"].id,
            BookingCreate(
                service_provider_id=users["provider"].id,
                service_id="svc-1",
                hourly_rate=Decimal("10"),
                estimated_hours=Decimal("1"),
            ),
        )
    with pytest.raises(ValidationError) as exc:
        machine.create_booking(
            users["client"].id,
            BookingCreate(
                service_provider_id=users["stranger"].id,
                service_id="svc-1",
                hourly_rate=Decimal("10"),
                estimated_hours=Decimal("1"),
            ),
        )
    assert exc.value.field_errors == {"service_provider_id": "not_a_provider"}
    with pytest.raises(NotFound):
        machine.create_booking(
            users["client"].id,
            BookingCreate(
                service_provider_id=4242,
                service_id="svc-1",
                hourly_rate=Decimal("10"),
                estimated_hours=Decimal("1"),
            ),
        )


# ── who may act ──────────────────────────────────────────────────────────


def test_non_party_is_denied_everything(machine, users):
    booking = _proposed(machine, users)
    for target in ("confirmed", "cancelled", "declined"):
        with pytest.raises(AccessDenied):
            machine.transition(booking.id, users["stranger"].id, target)
    assert machine.store.get_by_id(booking.id).status == BookingStatus.PENDING_BUYER


def test_wrong_party_is_denied(machine, users, stripe):
    booking = _create(machine, users)
    with pytest.raises(AccessDenied) as exc:
        machine.propose(booking.id, users["client"].id, Decimal("3"), DUE)
    assert exc.value.attempted == "pending-buyer"
    assert exc.value.booking_id == booking.id

    machine.propose(booking.id, users["provider"].id, Decimal("3"), DUE)
    with pytest.raises(AccessDenied):
        machine.confirm(booking.id, users["provider"].id)
    assert stripe.calls["authorize"] == 0
    assert machine.store.get_by_id(booking.id).status == BookingStatus.PENDING_BUYER


def test_role_is_checked_before_state(machine, users):
    booking = _create(machine, users)
    with pytest.raises(AccessDenied):
        machine.complete(booking.id, users["provider"].id)


# ── what moves are allowed ───────────────────────────────────────────────


@pytest.mark.parametrize(
    "target,actor",
    [
        ("confirmed", "client"),
        ("completed", "client"),
        ("in-progress", "provider"),
        ("awaiting-review", "provider"),
        ("disputed", "client"),
        ("refunded", "client"),
    ],
)
def test_off_table_moves_from_pending_are_rejected(machine, users, stripe, target, actor):
    booking = _create(machine, users)
    with pytest.raises(InvalidTransition) as exc:
        machine.transition(booking.id, users[actor].id, target)
    assert exc.value.attempted == target
    fresh = machine.store.get_by_id(booking.id)
    assert fresh.status == BookingStatus.PENDING
    assert fresh.version == booking.version
    assert sum(stripe.calls.values()) == 0


def test_unknown_and_unreachable_targets(machine, users):
    booking = _create(machine, users)
    with pytest.raises(InvalidTransition):
        machine.transition(booking.id, users["client"].id, "archived")
    with pytest.raises(InvalidTransition):
        machine.transition(booking.id, users["client"].id, BookingStatus.PENDING)


def test_terminal_bookings_stay_put(machine, users):
    booking = _create(machine, users)
    machine.cancel(booking.id, users["client"].id)
    for target, actor in (("pending-buyer", "provider"), ("cancelled", "provider"), ("declined", "provider")):
        with pytest.raises(InvalidTransition):
            machine.transition(booking.id, users[actor].id, target)
    assert machine.store.get_by_id(booking.id).status == BookingStatus.CANCELLED


def test_underscore_status_spelling_is_accepted(machine, users):
    booking = _create(machine, users)
    updated = machine.transition(
        booking.id,
        users["provider"].id,
        "pending_buyer",
        {"proposed_hours": "2", "proposed_due_date": DUE.isoformat()},
    )
    assert updated.status == BookingStatus.PENDING_BUYER


# ── proposals ────────────────────────────────────────────────────────────


def test_proposal_needs_hours_and_due_date(machine, users):
    booking = _create(machine, users)
    with pytest.raises(ValidationError) as exc:
        machine.propose(booking.id, users["provider"].id, Decimal("0"), None)
    assert set(exc.value.field_errors) == {"proposed_hours", "proposed_due_date"}

    with pytest.raises(ValidationError):
        machine.propose(booking.id, users["provider"].id, Decimal("2"), DUE, Decimal("-5"))

    with pytest.raises(ValidationError):
        machine.transition(booking.id, users["provider"].id, "pending-buyer", {"proposed_hours": "lots"})

    assert machine.store.get_by_id(booking.id).status == BookingStatus.PENDING


def test_proposal_total_defaults_to_rate_times_hours(machine, users):
    booking = _create(machine, users)
    proposed = machine.propose(booking.id, users["provider"].id, Decimal("3"), DUE)
    assert proposed.proposed_total == Decimal("150.00")


# ── duplicate submissions ────────────────────────────────────────────────


def test_repeated_proposal_is_a_no_op(machine, users):
    booking = _create(machine, users)
    first = machine.propose(booking.id, users["provider"].id, Decimal("3"), DUE, Decimal("150"))
    outcome = machine.apply(
        booking.id,
        users["provider"].id,
        "pending-buyer",
        {
            "proposed_hours": Decimal("3"),
            "proposed_due_date": DUE,
            "proposed_total": Decimal("150"),
            "provider_notes": None,
        },
    )
    assert outcome.duplicate is True
    assert outcome.booking.version == first.version


def test_double_confirm_authorizes_once(machine, users, stripe):
    booking = _proposed(machine, users)
    first = machine.confirm(booking.id, users["client"].id)
    second = machine.apply(booking.id, users["client"].id, "confirmed")
    assert second.duplicate is True
    assert second.booking.payment_intent_id == first.payment_intent_id
    assert stripe.calls["authorize"] == 1


def test_repeat_outside_window_is_judged_on_state(session_factory, store, stripe, users):
    machine = _machine_with_store(session_factory, store, stripe, duplicate_window_seconds=-1)
    booking = _proposed(machine, users)
    machine.confirm(booking.id, users["client"].id)
    with pytest.raises(InvalidTransition):
        machine.confirm(booking.id, users["client"].id)
    assert stripe.calls["authorize"] == 1


# ── ledger failures and races ────────────────────────────────────────────


def test_authorize_failure_leaves_booking_untouched(machine, users, stripe):
    booking = _proposed(machine, users)
    events = []
    machine.store.subscribe(users["client"].id, events.append)
    stripe.fail("authorize", 500)

    with pytest.raises(PaymentGatewayError):
        machine.confirm(booking.id, users["client"].id)

    fresh = machine.store.get_by_id(booking.id)
    assert fresh.status == BookingStatus.PENDING_BUYER
    assert fresh.payment_intent_id is None
    assert fresh.pending_transition is None
    assert events == []

    # The claim was released, so the client can simply try again.
    confirmed = machine.confirm(booking.id, users["client"].id)
    assert confirmed.status == BookingStatus.CONFIRMED
    assert len(stripe.intents) == 1


def test_confirm_requires_provider_payout_account(machine, users, make_user, stripe):
    provider = make_user("nopayout@test.com", UserType.SERVICE_PROVIDER)
    booking = machine.create_booking(
        users["client"].id,
        BookingCreate(
            service_provider_id=provider.id,
            service_id="svc-9",
            hourly_rate=Decimal("20"),
            estimated_hours=Decimal("1"),
        ),
    )
    machine.propose(booking.id, provider.id, Decimal("1"), DUE)
    with pytest.raises(ValidationError) as exc:
        machine.confirm(booking.id, users["client"].id)
    assert exc.value.field_errors == {"service_provider_id": "no_payout_account"}
    assert stripe.calls["authorize"] == 0


def test_concurrent_confirms_authorize_once(machine, users, stripe):
    booking = _proposed(machine, users)
    losers = []

    def second_confirm(intent):
        try:
            machine.confirm(booking.id, users["client"].id)
        except StaleState as exc:
            losers.append(exc)

    stripe.on_authorize = second_confirm
    winner = machine.confirm(booking.id, users["client"].id)

    assert winner.status == BookingStatus.CONFIRMED
    assert len(losers) == 1
    assert losers[0].attempted == "authorize"
    assert stripe.calls["authorize"] == 1


def test_in_flight_claim_blocks_other_transitions(machine, users, stripe):
    booking = _proposed(machine, users)
    machine.store.claim(booking.id, "authorize", booking.version, booking.status)

    with pytest.raises(StaleState):
        machine.confirm(booking.id, users["client"].id)
    with pytest.raises(StaleState):
        machine.cancel(booking.id, users["provider"].id)
    assert stripe.calls["authorize"] == 0


def test_abandoned_claim_expires(session_factory, hub, stripe, users):
    store = BookingStore(session_factory=session_factory, hub=hub, claim_ttl_seconds=-1)
    machine = _machine_with_store(session_factory, store, stripe)
    booking = _proposed(machine, users)
    store.claim(booking.id, "authorize", booking.version, booking.status)

    confirmed = machine.confirm(booking.id, users["client"].id)
    assert confirmed.status == BookingStatus.CONFIRMED


def test_lost_write_after_authorize_cancels_the_hold(machine, users, stripe):
    booking = _proposed(machine, users)

    def concurrent_edit(intent):
        machine.store.update(booking.id, {"notes": "edited elsewhere"})

    stripe.on_authorize = concurrent_edit
    with pytest.raises(StaleState):
        machine.confirm(booking.id, users["client"].id)

    (intent,) = stripe.intents.values()
    assert intent["status"] == "canceled"
    assert intent["cancellation_reason"] == "duplicate"
    fresh = machine.store.get_by_id(booking.id)
    assert fresh.status == BookingStatus.PENDING_BUYER
    assert fresh.payment_intent_id is None


def test_database_error_after_authorize_cancels_the_hold(machine, users, stripe, monkeypatch):
    booking = _proposed(machine, users)
    real_update = machine.store.update

    def failing_update(booking_id, patch, **kwargs):
        if patch.get("status") == BookingStatus.CONFIRMED:
            raise OperationalError("UPDATE bookings", {}, Exception("database is locked"))
        return real_update(booking_id, patch, **kwargs)

    monkeypatch.setattr(machine.store, "update", failing_update)
    with pytest.raises(OperationalError):
        machine.confirm(booking.id, users["client"].id)

    (intent,) = stripe.intents.values()
    assert intent["status"] == "canceled"
    assert stripe.calls["cancel"] == 1
    fresh = machine.store.get_by_id(booking.id)
    assert fresh.status == BookingStatus.PENDING_BUYER
    assert fresh.payment_intent_id is None
    assert fresh.pending_transition is None


def test_capture_failure_keeps_awaiting_review(machine, users, stripe):
    booking = _awaiting_review(machine, users)
    stripe.fail("capture", 502)
    with pytest.raises(PaymentGatewayError):
        machine.complete(booking.id, users["client"].id)
    fresh = machine.store.get_by_id(booking.id)
    assert fresh.status == BookingStatus.AWAITING_REVIEW
    assert fresh.pending_transition is None

    assert machine.complete(booking.id, users["client"].id).status == BookingStatus.COMPLETED


def test_capture_already_taken_is_reconciled(machine, users, stripe):
    booking = _awaiting_review(machine, users)
    intent = stripe.intents[booking.payment_intent_id]
    intent["status"] = "succeeded"
    intent["amount_received"] = intent["amount"]

    outcome = machine.apply(booking.id, users["client"].id, "completed")
    assert outcome.booking.status == BookingStatus.COMPLETED
    assert outcome.capture.amount_received == 15000
    assert stripe.calls["capture"] == 0


def test_capture_of_released_hold_fails(machine, users, stripe):
    booking = _awaiting_review(machine, users)
    stripe.intents[booking.payment_intent_id]["status"] = "canceled"
    with pytest.raises(InvalidPaymentState):
        machine.complete(booking.id, users["client"].id)
    assert machine.store.get_by_id(booking.id).status == BookingStatus.AWAITING_REVIEW


# ── cancellation and refunds ─────────────────────────────────────────────


def test_cancel_before_payment_is_plain(machine, users, stripe):
    booking = _proposed(machine, users)
    cancelled = machine.cancel(booking.id, users["provider"].id)
    assert cancelled.status == BookingStatus.CANCELLED
    assert sum(stripe.calls.values()) == 0


def test_cancel_after_confirm_releases_hold(machine, users, stripe):
    booking = _confirmed(machine, users)
    refunded = machine.cancel(booking.id, users["client"].id, reason="requested_by_customer")
    assert refunded.status == BookingStatus.REFUNDED
    assert stripe.intents[booking.payment_intent_id]["status"] == "canceled"
    assert stripe.calls["refund"] == 0


def test_disputed_captured_payment_is_refunded_in_full(machine, users, stripe):
    booking = _awaiting_review(machine, users)
    machine.dispute(booking.id, users["client"].id)
    intent = stripe.intents[booking.payment_intent_id]
    intent["status"] = "succeeded"
    intent["amount_received"] = intent["amount"]

    outcome = machine.apply(booking.id, users["provider"].id, "refunded", reason="fraudulent")
    assert outcome.booking.status == BookingStatus.REFUNDED
    assert outcome.refund.status == "refunded"
    assert outcome.refund.refunded_amount == 15000
    assert stripe.refunds[outcome.refund.refund_id]["reason"] == "fraudulent"


def test_retried_refund_after_lost_write_does_not_refund_twice(machine, users, stripe):
    booking = _awaiting_review(machine, users)
    machine.dispute(booking.id, users["client"].id)
    intent = stripe.intents[booking.payment_intent_id]
    intent["status"] = "succeeded"
    intent["amount_received"] = intent["amount"]
    # An earlier attempt refunded at the processor but never recorded the status.
    machine.ledger.cancel_or_refund(booking.payment_intent_id, booking_id=booking.id)

    outcome = machine.apply(booking.id, users["client"].id, "refunded")
    assert outcome.booking.status == BookingStatus.REFUNDED
    assert outcome.refund.refunded_amount == 15000
    assert len(stripe.refunds) == 1


def test_refund_of_already_released_hold_is_reconciled(machine, users, stripe):
    booking = _confirmed(machine, users)
    stripe.intents[booking.payment_intent_id]["status"] = "canceled"
    outcome = machine.apply(booking.id, users["client"].id, "refunded")
    assert outcome.booking.status == BookingStatus.REFUNDED
    assert outcome.refund.refunded_amount == 0


def test_refund_failure_keeps_state(machine, users, stripe):
    booking = _confirmed(machine, users)
    stripe.fail("cancel", 500)
    with pytest.raises(PaymentGatewayError):
        machine.cancel(booking.id, users["client"].id)
    fresh = machine.store.get_by_id(booking.id)
    assert fresh.status == BookingStatus.CONFIRMED
    assert fresh.pending_transition is None


# ── payment façade ───────────────────────────────────────────────────────


def test_authorize_payment_checks_booking_terms(machine, users, stripe):
    booking = _proposed(machine, users)
    with pytest.raises(ValidationError) as exc:
        machine.authorize_payment(users["client"].id, booking.id, Decimal("100"), users["provider"].id)
    assert exc.value.field_errors == {"total_amount": "does_not_match_booking"}
    with pytest.raises(ValidationError):
        machine.authorize_payment(users["client"].id, booking.id, Decimal("150"), users["provider"].id, "usd")
    with pytest.raises(AccessDenied):
        machine.authorize_payment(users["stranger"].id, booking.id, Decimal("150"), users["provider"].id)
    assert stripe.calls["authorize"] == 0

    outcome = machine.authorize_payment(
        users["client"].id, booking.id, Decimal("150.00"), users["provider"].id, "SGD", Decimal("10")
    )
    assert outcome.booking.status == BookingStatus.CONFIRMED
    assert outcome.authorization.application_fee_amount == 1000

    again = machine.authorize_payment(
        users["client"].id, booking.id, Decimal("150.00"), users["provider"].id, "SGD", Decimal("10")
    )
    assert again.duplicate is True
    assert again.authorization.payment_intent_id == outcome.authorization.payment_intent_id
    assert stripe.calls["authorize"] == 1


def test_capture_and_refund_by_payment_intent(machine, users, stripe):
    booking = _awaiting_review(machine, users)
    with pytest.raises(AccessDenied):
        machine.capture_payment(users["provider"].id, booking.payment_intent_id)
    with pytest.raises(NotFound):
        machine.capture_payment(users["client"].id, "pi_unknown")

    outcome = machine.capture_payment(users["client"].id, booking.payment_intent_id)
    assert outcome.booking.status == BookingStatus.COMPLETED
    assert outcome.capture.status == "succeeded"

    other = _confirmed(machine, users)
    refund = machine.refund_payment(users["client"].id, other.payment_intent_id, "requested_by_customer")
    assert refund.booking.status == BookingStatus.REFUNDED
    assert refund.refund.status == "canceled"


# ── collaborators ────────────────────────────────────────────────────────


def test_open_conversation_for_parties_only(machine, users):
    booking = _create(machine, users)
    handle = machine.open_conversation(booking.id, users["client"].id)
    assert handle.created is True
    assert set(handle.participant_ids) == {users["client"].id, users["provider"].id}
    assert handle.service_id == "svc-1"

    again = machine.open_conversation(booking.id, users["provider"].id)
    assert again.conversation_id == handle.conversation_id
    assert again.created is False

    with pytest.raises(AccessDenied):
        machine.open_conversation(booking.id, users["stranger"].id)


def test_review_rules(machine, users):
    booking = _confirmed(machine, users)
    with pytest.raises(InvalidTransition):
        machine.record_review(booking.id, users["client"].id, 5)
    machine.mark_awaiting_review(booking.id, users["provider"].id)
    with pytest.raises(AccessDenied):
        machine.record_review(booking.id, users["provider"].id, 5)
    with pytest.raises(ValidationError):
        machine.record_review(booking.id, users["client"].id, 6)
    assert machine.is_reviewable(booking.id) is True
