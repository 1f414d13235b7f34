from __future__ import annotations

from sqlalchemy import Column, ForeignKey, Index, Integer, String

from .base import BaseModel


class BookingAction(BaseModel):
    """Log of applied booking actions, used to absorb re-sent submissions.

    An action is identified by (booking, actor, target status, payload
    fingerprint); the state machine ignores an identical action seen within
    the duplicate window.
    """

    __tablename__ = "booking_actions"
    __table_args__ = (
        Index("ix_booking_actions_lookup", "booking_id", "actor_id", "target_status", "fingerprint"),
    )

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False)
    actor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    target_status = Column(String, nullable=False)
    fingerprint = Column(String(64), nullable=False)
