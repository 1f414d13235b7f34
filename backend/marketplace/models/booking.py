# backend/marketplace/models/booking.py

from decimal import Decimal

from sqlalchemy import Column, Integer, DateTime, Numeric, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from .base import BaseModel
from .booking_status import BookingStatus
from .types import CaseInsensitiveEnum

# Columns that identify the parties and the service; never rewritten after insert.
IMMUTABLE_FIELDS = frozenset({"id", "client_id", "service_provider_id", "service_id", "created_at"})


class Booking(BaseModel):
    __tablename__ = "bookings"

    id                  = Column(Integer, primary_key=True, index=True)
    service_id          = Column(String, nullable=False, index=True)
    service_title       = Column(String, nullable=True)
    service_provider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    client_id           = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    hourly_rate          = Column(Numeric(10, 2), nullable=False, default=0)
    estimated_hours      = Column(Numeric(10, 2), nullable=False, default=1)
    total_estimate       = Column(Numeric(10, 2), nullable=False, default=0)
    currency             = Column(String(3), nullable=False, default="sgd")
    preferred_start_date = Column(DateTime, nullable=True)
    notes                = Column(Text, nullable=True)

    # Provider proposal (pending -> pending-buyer)
    proposed_hours    = Column(Numeric(10, 2), nullable=True)
    proposed_due_date = Column(DateTime, nullable=True)
    proposed_total    = Column(Numeric(10, 2), nullable=True)
    provider_notes    = Column(Text, nullable=True)

    status = Column(
        CaseInsensitiveEnum(BookingStatus, name="bookingstatus"),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True,
    )
    payment_intent_id = Column(String, nullable=True, unique=True, index=True)

    # Optimistic concurrency: bumped on every write
    version = Column(Integer, nullable=False, default=1)
    # In-flight claim for transitions that call the ledger
    pending_transition = Column(String, nullable=True)
    pending_since      = Column(DateTime, nullable=True)

    client           = relationship("User", foreign_keys=[client_id], back_populates="bookings_as_client")
    service_provider = relationship("User", foreign_keys=[service_provider_id], back_populates="bookings_as_provider")

    @property
    def amount_due(self) -> Decimal:
        """Authoritative total for payment: the proposal when present, else the estimate."""
        if self.proposed_total is not None:
            return Decimal(self.proposed_total)
        return Decimal(self.total_estimate or 0)
