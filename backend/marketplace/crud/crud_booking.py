import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.orm import Session, sessionmaker

from .. import models, schemas
from ..core.config import settings
from ..database import SessionLocal, get_db_session
from ..models.booking_status import BookingStatus
from ..realtime.events import EVENT_CREATED, EVENT_UPDATED, BookingEvent, BookingEventHub
from ..utils.errors import NotFound, StaleState, ValidationError

logger = logging.getLogger(__name__)

_WRITABLE_FIELDS = frozenset(
    c.name for c in models.Booking.__table__.columns
) - models.IMMUTABLE_FIELDS - {"version", "updated_at"}


def booking_to_payload(booking: models.Booking) -> Dict[str, Any]:
    """JSON-safe booking snapshot used in change events."""
    return schemas.BookingResponse.model_validate(booking).model_dump(mode="json")


class BookingStore:
    """Persistence for bookings with optimistic, per-record atomic writes.

    Every write is a single conditional UPDATE that bumps ``version``; callers
    pass the version and/or status they read so concurrent writers cannot both
    succeed. Committed writes are published to the event hub.
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        hub: Optional[BookingEventHub] = None,
        claim_ttl_seconds: Optional[int] = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.hub = hub if hub is not None else BookingEventHub()
        self.claim_ttl_seconds = (
            settings.TRANSITION_CLAIM_TTL_SECONDS if claim_ttl_seconds is None else claim_ttl_seconds
        )

    # ── reads ────────────────────────────────────────────────────────────

    def _get(self, db: Session, booking_id: int) -> models.Booking:
        booking = db.query(models.Booking).filter(models.Booking.id == booking_id).first()
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found.", booking_id=booking_id)
        return booking

    def get_by_id(self, booking_id: int) -> models.Booking:
        with get_db_session(self._session_factory) as db:
            return self._get(db, booking_id)

    def get_by_payment_intent(self, payment_intent_id: str) -> models.Booking:
        with get_db_session(self._session_factory) as db:
            booking = (
                db.query(models.Booking)
                .filter(models.Booking.payment_intent_id == payment_intent_id)
                .first()
            )
        if booking is None:
            raise NotFound(f"No booking holds payment {payment_intent_id}.")
        return booking

    def list_by_client(self, client_id: int, skip: int = 0, limit: int = 100) -> List[models.Booking]:
        with get_db_session(self._session_factory) as db:
            return (
                db.query(models.Booking)
                .filter(models.Booking.client_id == client_id)
                .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
                .offset(skip)
                .limit(limit)
                .all()
            )

    def list_by_provider(self, provider_id: int, skip: int = 0, limit: int = 100) -> List[models.Booking]:
        with get_db_session(self._session_factory) as db:
            return (
                db.query(models.Booking)
                .filter(models.Booking.service_provider_id == provider_id)
                .order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
                .offset(skip)
                .limit(limit)
                .all()
            )

    # ── writes ───────────────────────────────────────────────────────────

    def create(
        self,
        *,
        client_id: int,
        service_provider_id: int,
        service_id: str,
        hourly_rate: Decimal,
        estimated_hours: Decimal,
        service_title: Optional[str] = None,
        currency: Optional[str] = None,
        preferred_start_date: Optional[datetime] = None,
        notes: Optional[str] = None,
    ) -> models.Booking:
        hourly_rate = Decimal(hourly_rate)
        estimated_hours = Decimal(estimated_hours)
        if hourly_rate < 0:
            raise ValidationError("Hourly rate cannot be negative.", field_errors={"hourly_rate": "negative"})
        if estimated_hours <= 0:
            raise ValidationError(
                "Estimated hours must be positive.", field_errors={"estimated_hours": "not_positive"}
            )
        booking = models.Booking(
            client_id=client_id,
            service_provider_id=service_provider_id,
            service_id=str(service_id),
            service_title=service_title,
            hourly_rate=hourly_rate,
            estimated_hours=estimated_hours,
            total_estimate=(hourly_rate * estimated_hours).quantize(Decimal("0.01")),
            currency=(currency or settings.DEFAULT_CURRENCY).lower(),
            preferred_start_date=preferred_start_date,
            notes=notes,
            status=BookingStatus.PENDING,
            version=1,
        )
        with get_db_session(self._session_factory) as db:
            db.add(booking)
            db.commit()
            db.refresh(booking)
        logger.info(
            "booking_created id=%s client=%s provider=%s total=%s",
            booking.id,
            client_id,
            service_provider_id,
            booking.total_estimate,
        )
        self._emit(EVENT_CREATED, booking)
        return booking

    def update(
        self,
        booking_id: int,
        patch: Mapping[str, Any],
        expected_version: Optional[int] = None,
        expected_status: Optional[BookingStatus] = None,
        *,
        unclaimed: bool = False,
    ) -> models.Booking:
        """Apply ``patch`` atomically if the optimistic conditions still hold.

        ``unclaimed`` additionally requires that no live transition claim is
        held on the record.
        """
        patch = dict(patch)
        immutable = sorted(k for k in patch if k in models.IMMUTABLE_FIELDS)
        if immutable:
            raise ValidationError(
                "Booking identity fields cannot be changed.",
                booking_id=booking_id,
                field_errors={k: "immutable" for k in immutable},
            )
        unknown = sorted(k for k in patch if k not in _WRITABLE_FIELDS)
        if unknown:
            raise ValidationError(
                "Unknown booking fields.",
                booking_id=booking_id,
                field_errors={k: "unknown" for k in unknown},
            )
        conditions = [models.Booking.id == booking_id]
        if expected_version is not None:
            conditions.append(models.Booking.version == expected_version)
        if expected_status is not None:
            conditions.append(models.Booking.status == BookingStatus(expected_status))
        if unclaimed:
            conditions.append(self._claim_free())
        return self._conditional_write(booking_id, conditions, patch, attempted=patch.get("status"))

    def claim(
        self,
        booking_id: int,
        transition: str,
        expected_version: int,
        expected_status: BookingStatus,
    ) -> models.Booking:
        """Mark a ledger-backed transition as in flight. Only one caller can hold it."""
        conditions = [
            models.Booking.id == booking_id,
            models.Booking.version == expected_version,
            models.Booking.status == BookingStatus(expected_status),
            self._claim_free(),
        ]
        patch = {"pending_transition": transition, "pending_since": datetime.utcnow()}
        booking = self._conditional_write(booking_id, conditions, patch, attempted=transition, emit=False)
        logger.info("booking_claimed id=%s transition=%s version=%s", booking_id, transition, booking.version)
        return booking

    def release(self, booking_id: int, claimed_version: int) -> bool:
        """Drop a claim held at ``claimed_version``. Returns False if it was already superseded."""
        conditions = [models.Booking.id == booking_id, models.Booking.version == claimed_version]
        patch = {"pending_transition": None, "pending_since": None}
        try:
            self._conditional_write(booking_id, conditions, patch, emit=False)
        except StaleState:
            logger.warning("booking_release_skipped id=%s version=%s", booking_id, claimed_version)
            return False
        return True

    def _claim_free(self):
        cutoff = datetime.utcnow() - timedelta(seconds=self.claim_ttl_seconds)
        return or_(
            models.Booking.pending_transition.is_(None),
            and_(models.Booking.pending_since.isnot(None), models.Booking.pending_since < cutoff),
        )

    def _conditional_write(
        self,
        booking_id: int,
        conditions: list,
        patch: Dict[str, Any],
        *,
        attempted: Any = None,
        emit: bool = True,
    ) -> models.Booking:
        attempted_value = getattr(attempted, "value", attempted)
        with get_db_session(self._session_factory) as db:
            stmt = (
                update(models.Booking)
                .where(*conditions)
                .values(**patch, version=models.Booking.version + 1)
                .execution_options(synchronize_session=False)
            )
            result = db.execute(stmt)
            if result.rowcount != 1:
                db.rollback()
                # Distinguishes a missing record (NotFound) from a lost race.
                self._get(db, booking_id)
                raise StaleState(
                    "Booking was changed by someone else. Refresh and try again.",
                    booking_id=booking_id,
                    attempted=attempted_value,
                )
            db.commit()
            booking = self._get(db, booking_id)
        if "status" in patch:
            logger.info(
                "booking_status id=%s status=%s version=%s",
                booking_id,
                booking.status.value,
                booking.version,
            )
        if emit:
            self._emit(EVENT_UPDATED, booking)
        return booking

    # ── duplicate-submission log ─────────────────────────────────────────

    def record_action(self, booking_id: int, actor_id: int, target_status: str, fingerprint: str) -> None:
        with get_db_session(self._session_factory) as db:
            db.add(
                models.BookingAction(
                    booking_id=booking_id,
                    actor_id=actor_id,
                    target_status=target_status,
                    fingerprint=fingerprint,
                )
            )
            db.commit()

    def find_recent_action(
        self,
        booking_id: int,
        actor_id: int,
        target_status: str,
        fingerprint: str,
        within_seconds: int,
    ) -> bool:
        cutoff = datetime.utcnow() - timedelta(seconds=within_seconds)
        with get_db_session(self._session_factory) as db:
            hit = (
                db.query(models.BookingAction.id)
                .filter(
                    models.BookingAction.booking_id == booking_id,
                    models.BookingAction.actor_id == actor_id,
                    models.BookingAction.target_status == target_status,
                    models.BookingAction.fingerprint == fingerprint,
                    models.BookingAction.created_at >= cutoff,
                )
                .first()
            )
        return hit is not None

    # ── realtime ─────────────────────────────────────────────────────────

    def subscribe(self, viewer_id: int, callback: Callable[[BookingEvent], None]) -> Callable[[], None]:
        """Receive change events for bookings where ``viewer_id`` is client or provider."""
        return self.hub.subscribe(viewer_id, callback)

    def _emit(self, event_type: str, booking: models.Booking) -> None:
        self.hub.publish(BookingEvent(event_type=event_type, booking=booking_to_payload(booking)))
