"""Booking lifecycle: who may move a booking where, and what the ledger does on the way.

Plain transitions are one conditional write. Transitions that touch money
first claim the booking (``pending_transition``), call the ledger as the sole
claimant, then write the new status conditioned on the claimed version. A
ledger failure releases the claim and leaves the status untouched.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import orjson
from pydantic import ValidationError as PydanticValidationError

from .. import models, schemas
from ..core.config import settings
from ..crud.crud_booking import BookingStore
from ..crud.crud_review import ReviewRepository
from ..crud.crud_user import UserDirectory
from ..models.booking_status import BookingStatus
from ..utils.errors import (
    AccessDenied,
    InvalidPaymentState,
    InvalidTransition,
    StaleState,
    ValidationError,
)
from . import review_gate
from .conversation_bridge import ConversationBridge, ConversationHandle, SqlConversationBridge
from .ledger_gateway import (
    CaptureResult,
    LedgerGateway,
    PaymentAuthorization,
    RefundResult,
    StripeLedgerGateway,
    to_minor_units,
)

logger = logging.getLogger(__name__)

CLIENT = "client"
PROVIDER = "provider"
EITHER = "either"

EFFECT_PROPOSE = "propose"
EFFECT_AUTHORIZE = "authorize"
EFFECT_CAPTURE = "capture"
EFFECT_REFUND = "cancel_or_refund"


@dataclass(frozen=True)
class Edge:
    target: BookingStatus
    sources: frozenset
    role: str
    effect: Optional[str] = None


def _edge(target, sources, role, effect=None) -> Edge:
    return Edge(target=target, sources=frozenset(sources), role=role, effect=effect)


S = BookingStatus
TRANSITIONS: Dict[BookingStatus, Edge] = {
    e.target: e
    for e in (
        _edge(S.PENDING_BUYER, {S.PENDING}, PROVIDER, EFFECT_PROPOSE),
        _edge(S.DECLINED, {S.PENDING}, PROVIDER),
        _edge(S.CONFIRMED, {S.PENDING_BUYER}, CLIENT, EFFECT_AUTHORIZE),
        _edge(S.IN_PROGRESS, {S.CONFIRMED}, PROVIDER),
        _edge(S.AWAITING_REVIEW, {S.CONFIRMED, S.IN_PROGRESS}, PROVIDER),
        _edge(S.COMPLETED, {S.AWAITING_REVIEW}, CLIENT, EFFECT_CAPTURE),
        _edge(S.DISPUTED, {S.AWAITING_REVIEW}, CLIENT),
        _edge(S.CANCELLED, {S.PENDING, S.PENDING_BUYER}, EITHER),
        _edge(S.REFUNDED, {S.CONFIRMED, S.IN_PROGRESS, S.AWAITING_REVIEW, S.DISPUTED}, EITHER, EFFECT_REFUND),
    )
}
# States in which money is held or captured; cancelling from here means refunding.
FUNDED_STATUSES = TRANSITIONS[S.REFUNDED].sources


@dataclass
class TransitionOutcome:
    booking: models.Booking
    authorization: Optional[PaymentAuthorization] = None
    capture: Optional[CaptureResult] = None
    refund: Optional[RefundResult] = None
    duplicate: bool = False
    reviewable: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


def _fingerprint(payload: Mapping[str, Any], options: Mapping[str, Any]) -> str:
    body = orjson.dumps(
        {"payload": dict(payload), "options": {k: v for k, v in options.items() if v is not None}},
        option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS,
        default=str,
    )
    return hashlib.sha256(body).hexdigest()


class BookingStateMachine:
    def __init__(
        self,
        store: Optional[BookingStore] = None,
        ledger: Optional[LedgerGateway] = None,
        users: Optional[UserDirectory] = None,
        reviews: Optional[ReviewRepository] = None,
        conversations: Optional[ConversationBridge] = None,
        duplicate_window_seconds: Optional[int] = None,
    ) -> None:
        self.store = store or BookingStore()
        self.ledger = ledger or StripeLedgerGateway()
        self.users = users or UserDirectory()
        self.reviews = reviews or ReviewRepository()
        self.conversations = conversations or SqlConversationBridge()
        self.duplicate_window_seconds = (
            settings.DUPLICATE_ACTION_WINDOW_SECONDS
            if duplicate_window_seconds is None
            else duplicate_window_seconds
        )

    # ── creation ─────────────────────────────────────────────────────────

    def create_booking(self, client_id: int, request: schemas.BookingCreate) -> models.Booking:
        if client_id == request.service_provider_id:
            raise ValidationError(
                "You cannot book your own service.",
                field_errors={"service_provider_id": "same_as_client"},
            )
        provider = self.users.get(request.service_provider_id)
        if provider.user_type != models.UserType.SERVICE_PROVIDER:
            raise ValidationError(
                "The selected user does not offer services.",
                field_errors={"service_provider_id": "not_a_provider"},
            )
        return self.store.create(
            client_id=client_id,
            service_provider_id=request.service_provider_id,
            service_id=request.service_id,
            service_title=request.service_title,
            hourly_rate=request.hourly_rate,
            estimated_hours=request.estimated_hours,
            currency=request.currency,
            preferred_start_date=request.preferred_start_date,
            notes=request.notes,
        )

    # ── transitions ──────────────────────────────────────────────────────

    def transition(
        self,
        booking_id: int,
        actor_id: int,
        target_status: Any,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        reason: Optional[str] = None,
    ) -> models.Booking:
        return self.apply(booking_id, actor_id, target_status, payload, reason=reason).booking

    def apply(
        self,
        booking_id: int,
        actor_id: int,
        target_status: Any,
        payload: Optional[Mapping[str, Any]] = None,
        *,
        reason: Optional[str] = None,
        fee_amount: Optional[Decimal] = None,
    ) -> TransitionOutcome:
        """Run one transition and return the booking plus any ledger result."""
        try:
            target = BookingStatus(target_status)
        except ValueError:
            raise InvalidTransition(
                f"Unknown booking status {target_status!r}.", booking_id=booking_id, attempted=str(target_status)
            )
        booking = self.store.get_by_id(booking_id)
        edge = TRANSITIONS.get(target)
        if edge is None:
            raise InvalidTransition(
                f"Bookings cannot be moved to {target.value}.", booking_id=booking_id, attempted=target.value
            )
        self._check_actor(booking, actor_id, edge)

        payload = dict(payload or {})
        fingerprint = _fingerprint(payload, {"reason": reason, "fee_amount": fee_amount})
        if self.store.find_recent_action(
            booking.id, actor_id, target.value, fingerprint, self.duplicate_window_seconds
        ):
            logger.info(
                "booking_duplicate_action id=%s actor=%s target=%s", booking.id, actor_id, target.value
            )
            return TransitionOutcome(booking=booking, duplicate=True)

        if booking.status not in edge.sources:
            raise InvalidTransition(
                f"Cannot move booking from {booking.status.value} to {target.value}.",
                booking_id=booking.id,
                attempted=target.value,
            )

        if edge.effect == EFFECT_AUTHORIZE:
            outcome = self._confirm(booking, fee_amount)
        elif edge.effect == EFFECT_CAPTURE:
            outcome = self._complete(booking)
        elif edge.effect == EFFECT_REFUND:
            outcome = self._refund(booking, reason)
        else:
            patch: Dict[str, Any] = {"status": target}
            if edge.effect == EFFECT_PROPOSE:
                patch.update(self._proposal_patch(booking, payload))
            updated = self.store.update(
                booking.id,
                patch,
                expected_version=booking.version,
                expected_status=booking.status,
                unclaimed=True,
            )
            outcome = TransitionOutcome(booking=updated)

        self.store.record_action(booking.id, actor_id, target.value, fingerprint)
        outcome.reviewable = self._reviewable(outcome.booking)
        return outcome

    def _check_actor(self, booking: models.Booking, actor_id: int, edge: Edge) -> None:
        is_client = actor_id == booking.client_id
        is_provider = actor_id == booking.service_provider_id
        if not (is_client or is_provider):
            raise AccessDenied(
                "You are not a party to this booking.", booking_id=booking.id, attempted=edge.target.value
            )
        if edge.role == CLIENT and not is_client:
            raise AccessDenied(
                f"Only the client can move this booking to {edge.target.value}.",
                booking_id=booking.id,
                attempted=edge.target.value,
            )
        if edge.role == PROVIDER and not is_provider:
            raise AccessDenied(
                f"Only the service provider can move this booking to {edge.target.value}.",
                booking_id=booking.id,
                attempted=edge.target.value,
            )

    def _proposal_patch(self, booking: models.Booking, payload: Mapping[str, Any]) -> Dict[str, Any]:
        attempted = BookingStatus.PENDING_BUYER.value
        try:
            proposal = schemas.ProposalPayload.model_validate(payload)
        except PydanticValidationError as exc:
            field_errors = {".".join(str(p) for p in err["loc"]): err["msg"] for err in exc.errors()}
            raise ValidationError(
                "Invalid proposal.", booking_id=booking.id, attempted=attempted, field_errors=field_errors
            ) from exc
        errors: Dict[str, str] = {}
        if proposal.proposed_hours is None or proposal.proposed_hours <= 0:
            errors["proposed_hours"] = "must be positive"
        if proposal.proposed_due_date is None:
            errors["proposed_due_date"] = "required"
        total = proposal.proposed_total
        if total is None and not errors.get("proposed_hours"):
            total = (proposal.proposed_hours * Decimal(booking.hourly_rate)).quantize(Decimal("0.01"))
        if total is not None and total <= 0:
            errors["proposed_total"] = "must be positive"
        if errors:
            raise ValidationError(
                "Proposal needs positive hours, a positive total and a due date.",
                booking_id=booking.id,
                attempted=attempted,
                field_errors=errors,
            )
        return {
            "proposed_hours": proposal.proposed_hours,
            "proposed_due_date": proposal.proposed_due_date,
            "proposed_total": total,
            "provider_notes": proposal.provider_notes,
        }

    # ── ledger-backed transitions ────────────────────────────────────────

    def _confirm(self, booking: models.Booking, fee_amount: Optional[Decimal]) -> TransitionOutcome:
        attempted = BookingStatus.CONFIRMED.value
        destination = self.users.payout_account_for(booking.service_provider_id)
        if not destination:
            raise ValidationError(
                "Service provider has not set up payouts yet.",
                booking_id=booking.id,
                attempted=attempted,
                field_errors={"service_provider_id": "no_payout_account"},
            )
        amount = booking.amount_due
        if amount <= 0:
            raise ValidationError(
                "Booking total must be positive.",
                booking_id=booking.id,
                attempted=attempted,
                field_errors={"total": "not_positive"},
            )
        claimed = self.store.claim(booking.id, EFFECT_AUTHORIZE, booking.version, booking.status)
        try:
            authorization = self.ledger.authorize(
                booking.id,
                amount,
                booking.currency,
                destination,
                fee_amount,
                metadata={
                    "service_provider_id": booking.service_provider_id,
                    "client_id": booking.client_id,
                },
                idempotency_key=f"booking-{booking.id}-authorize-v{claimed.version}",
            )
        except Exception:
            self.store.release(booking.id, claimed.version)
            raise
        try:
            updated = self.store.update(
                booking.id,
                {
                    "status": BookingStatus.CONFIRMED,
                    "payment_intent_id": authorization.payment_intent_id,
                    "pending_transition": None,
                    "pending_since": None,
                },
                expected_version=claimed.version,
                expected_status=booking.status,
            )
        except Exception:
            self._compensate_authorization(booking.id, authorization)
            self._release_after_failed_write(booking.id, claimed.version)
            raise
        return TransitionOutcome(booking=updated, authorization=authorization)

    def _release_after_failed_write(self, booking_id: int, claimed_version: int) -> None:
        try:
            self.store.release(booking_id, claimed_version)
        except Exception:
            # The write error propagates; an unreleased claim lapses after the TTL.
            logger.exception("booking_claim_release_failed id=%s version=%s", booking_id, claimed_version)

    def _compensate_authorization(self, booking_id: int, authorization: PaymentAuthorization) -> None:
        logger.warning(
            "booking_authorize_compensating id=%s intent=%s", booking_id, authorization.payment_intent_id
        )
        try:
            self.ledger.cancel_or_refund(
                authorization.payment_intent_id,
                "duplicate",
                booking_id=booking_id,
                idempotency_key=f"booking-{booking_id}-compensate-{authorization.payment_intent_id}",
            )
        except Exception:
            # The write failure is what the caller sees; the orphaned hold expires on its own.
            logger.exception(
                "booking_authorize_compensation_failed id=%s intent=%s",
                booking_id,
                authorization.payment_intent_id,
            )

    def _complete(self, booking: models.Booking) -> TransitionOutcome:
        intent_id = booking.payment_intent_id
        if not intent_id:
            raise InvalidPaymentState(
                "This booking has no payment to capture.",
                booking_id=booking.id,
                attempted=BookingStatus.COMPLETED.value,
            )
        claimed = self.store.claim(booking.id, EFFECT_CAPTURE, booking.version, booking.status)
        try:
            capture = self._capture_or_reconcile(booking.id, intent_id, claimed.version)
        except Exception:
            self.store.release(booking.id, claimed.version)
            raise
        try:
            updated = self.store.update(
                booking.id,
                {"status": BookingStatus.COMPLETED, "pending_transition": None, "pending_since": None},
                expected_version=claimed.version,
                expected_status=booking.status,
            )
        except StaleState:
            # Funds are captured; a retried completion reconciles from the processor.
            logger.error("booking_capture_unrecorded id=%s intent=%s", booking.id, intent_id)
            raise
        return TransitionOutcome(booking=updated, capture=capture)

    def _capture_or_reconcile(self, booking_id: int, intent_id: str, version: int) -> CaptureResult:
        try:
            return self.ledger.capture(
                intent_id, booking_id=booking_id, idempotency_key=f"booking-{booking_id}-capture-v{version}"
            )
        except InvalidPaymentState:
            intent = self.ledger.retrieve(intent_id)
            if intent.get("status") != "succeeded":
                raise
            logger.info("booking_capture_reconciled id=%s intent=%s", booking_id, intent_id)
            return CaptureResult(
                payment_intent_id=intent_id,
                status="succeeded",
                amount_received=int(intent.get("amount_received") or 0),
            )

    def _refund(self, booking: models.Booking, reason: Optional[str]) -> TransitionOutcome:
        intent_id = booking.payment_intent_id
        claimed = self.store.claim(booking.id, EFFECT_REFUND, booking.version, booking.status)
        refund: Optional[RefundResult] = None
        if intent_id:
            try:
                refund = self._refund_or_reconcile(booking.id, intent_id, reason, claimed.version)
            except Exception:
                self.store.release(booking.id, claimed.version)
                raise
        updated = self.store.update(
            booking.id,
            {"status": BookingStatus.REFUNDED, "pending_transition": None, "pending_since": None},
            expected_version=claimed.version,
            expected_status=booking.status,
        )
        return TransitionOutcome(booking=updated, refund=refund)

    def _refund_or_reconcile(
        self, booking_id: int, intent_id: str, reason: Optional[str], version: int
    ) -> RefundResult:
        try:
            return self.ledger.cancel_or_refund(
                intent_id,
                reason,
                booking_id=booking_id,
                idempotency_key=f"booking-{booking_id}-refund-v{version}",
            )
        except InvalidPaymentState:
            intent = self.ledger.retrieve(intent_id)
            if intent.get("status") != "canceled":
                raise
            logger.info("booking_refund_reconciled id=%s intent=%s", booking_id, intent_id)
            return RefundResult(
                payment_intent_id=intent_id,
                status="canceled",
                refunded_amount=0,
                refund_id=f"canceled_{intent_id}",
            )

    # ── convenience wrappers ─────────────────────────────────────────────

    def propose(
        self,
        booking_id: int,
        provider_id: int,
        proposed_hours: Any,
        proposed_due_date: Optional[datetime],
        proposed_total: Any = None,
        provider_notes: Optional[str] = None,
    ) -> models.Booking:
        payload = {
            "proposed_hours": proposed_hours,
            "proposed_due_date": proposed_due_date,
            "proposed_total": proposed_total,
            "provider_notes": provider_notes,
        }
        return self.transition(booking_id, provider_id, BookingStatus.PENDING_BUYER, payload)

    def decline(self, booking_id: int, provider_id: int) -> models.Booking:
        return self.transition(booking_id, provider_id, BookingStatus.DECLINED)

    def confirm(self, booking_id: int, client_id: int) -> models.Booking:
        return self.transition(booking_id, client_id, BookingStatus.CONFIRMED)

    def start_work(self, booking_id: int, provider_id: int) -> models.Booking:
        return self.transition(booking_id, provider_id, BookingStatus.IN_PROGRESS)

    def mark_awaiting_review(self, booking_id: int, provider_id: int) -> models.Booking:
        return self.transition(booking_id, provider_id, BookingStatus.AWAITING_REVIEW)

    def complete(self, booking_id: int, client_id: int) -> models.Booking:
        return self.transition(booking_id, client_id, BookingStatus.COMPLETED)

    def dispute(self, booking_id: int, client_id: int) -> models.Booking:
        return self.transition(booking_id, client_id, BookingStatus.DISPUTED)

    def cancel(self, booking_id: int, actor_id: int, reason: Optional[str] = None) -> models.Booking:
        """Cancel outright before any money is held, otherwise release or refund it."""
        booking = self.store.get_by_id(booking_id)
        target = BookingStatus.REFUNDED if booking.status in FUNDED_STATUSES else BookingStatus.CANCELLED
        return self.transition(booking_id, actor_id, target, reason=reason)

    # ── payment façade ───────────────────────────────────────────────────

    def _require_client(self, booking: models.Booking, actor_id: int, attempted: str) -> None:
        if actor_id != booking.client_id:
            raise AccessDenied(
                "Only the client of this booking can manage its payment.",
                booking_id=booking.id,
                attempted=attempted,
            )

    def authorize_payment(
        self,
        actor_id: int,
        booking_id: int,
        total_amount: Decimal,
        service_provider_id: int,
        currency: Optional[str] = None,
        application_fee_amount: Optional[Decimal] = None,
    ) -> TransitionOutcome:
        booking = self.store.get_by_id(booking_id)
        attempted = BookingStatus.CONFIRMED.value
        self._require_client(booking, actor_id, attempted)
        errors: Dict[str, str] = {}
        if service_provider_id != booking.service_provider_id:
            errors["service_provider_id"] = "does_not_match_booking"
        if currency and currency.strip().lower() != booking.currency:
            errors["currency"] = "does_not_match_booking"
        if to_minor_units(total_amount) != to_minor_units(booking.amount_due):
            errors["total_amount"] = "does_not_match_booking"
        if errors:
            raise ValidationError(
                "Payment details do not match the booking.",
                booking_id=booking.id,
                attempted=attempted,
                field_errors=errors,
            )
        outcome = self.apply(
            booking.id, actor_id, BookingStatus.CONFIRMED, fee_amount=application_fee_amount
        )
        if outcome.authorization is None and outcome.booking.payment_intent_id:
            intent = self.ledger.retrieve(outcome.booking.payment_intent_id)
            outcome.authorization = PaymentAuthorization(
                payment_intent_id=intent["id"],
                client_secret=intent.get("client_secret"),
                status=intent.get("status") or "",
                amount=int(intent.get("amount") or 0),
                currency=intent.get("currency") or booking.currency,
                booking_id=booking.id,
            )
        return outcome

    def capture_payment(self, actor_id: int, payment_intent_id: str) -> TransitionOutcome:
        booking = self.store.get_by_payment_intent(payment_intent_id)
        self._require_client(booking, actor_id, BookingStatus.COMPLETED.value)
        outcome = self.apply(booking.id, actor_id, BookingStatus.COMPLETED)
        if outcome.capture is None:
            intent = self.ledger.retrieve(payment_intent_id)
            outcome.capture = CaptureResult(
                payment_intent_id=payment_intent_id,
                status=intent.get("status") or "",
                amount_received=int(intent.get("amount_received") or 0),
            )
        return outcome

    def refund_payment(
        self, actor_id: int, payment_intent_id: str, reason: Optional[str] = None
    ) -> TransitionOutcome:
        booking = self.store.get_by_payment_intent(payment_intent_id)
        self._require_client(booking, actor_id, BookingStatus.REFUNDED.value)
        outcome = self.apply(booking.id, actor_id, BookingStatus.REFUNDED, reason=reason)
        if outcome.refund is None:
            intent = self.ledger.retrieve(payment_intent_id)
            captured = intent.get("status") == "succeeded"
            outcome.refund = RefundResult(
                payment_intent_id=payment_intent_id,
                status="refunded" if captured else "canceled",
                refunded_amount=int(intent.get("amount_received") or 0) if captured else 0,
            )
        return outcome

    # ── collaborators ────────────────────────────────────────────────────

    def open_conversation(self, booking_id: int, actor_id: int) -> ConversationHandle:
        booking = self.store.get_by_id(booking_id)
        if actor_id not in (booking.client_id, booking.service_provider_id):
            raise AccessDenied("You are not a party to this booking.", booking_id=booking.id)
        return self.conversations.get_or_create_conversation(
            booking.client_id,
            booking.service_provider_id,
            service_id=booking.service_id,
            service_title=booking.service_title,
        )

    def _reviewable(self, booking: models.Booking) -> bool:
        if booking.status not in review_gate.REVIEWABLE_STATUSES:
            return False
        return review_gate.is_reviewable(booking, self.reviews.for_booking(booking))

    def is_reviewable(self, booking_id: int) -> bool:
        return self._reviewable(self.store.get_by_id(booking_id))

    def record_review(
        self, booking_id: int, reviewer_id: int, rating: int, comment: Optional[str] = None
    ) -> models.Review:
        booking = self.store.get_by_id(booking_id)
        return self.reviews.create(booking, reviewer_id, rating, comment)
