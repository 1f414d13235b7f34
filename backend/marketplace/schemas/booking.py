from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, Optional, Annotated
from datetime import datetime
from decimal import Decimal
from ..models.booking_status import BookingStatus # Enum for booking status


# Shared properties for Booking
class BookingBase(BaseModel):
    service_id: str
    service_title: Optional[str] = None
    hourly_rate: Annotated[Decimal, Field(ge=0)]
    estimated_hours: Annotated[Decimal, Field(gt=0)]
    preferred_start_date: Optional[datetime] = None
    notes: Optional[str] = None


# Properties to receive on item creation (from a client)
class BookingCreate(BookingBase):
    service_provider_id: int # The provider being booked
    # client_id is the authenticated user; total_estimate is computed server-side
    currency: Optional[str] = None


class ProposalPayload(BaseModel):
    """Provider proposal sent with the pending -> pending-buyer transition."""

    proposed_hours: Optional[Decimal] = None
    proposed_due_date: Optional[datetime] = None
    proposed_total: Optional[Decimal] = None
    provider_notes: Optional[str] = None


class TransitionRequest(BaseModel):
    target_status: BookingStatus
    payload: Optional[Dict[str, Any]] = None
    # Only used by refunds
    reason: Optional[str] = None


# Properties to return to client
class BookingResponse(BookingBase):
    id: int
    service_provider_id: int
    client_id: int
    status: BookingStatus
    total_estimate: Decimal
    currency: str
    proposed_hours: Optional[Decimal] = None
    proposed_due_date: Optional[datetime] = None
    proposed_total: Optional[Decimal] = None
    provider_notes: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount_due: Decimal
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {
        "from_attributes": True
    }


class ReviewableResponse(BaseModel):
    booking_id: int
    reviewable: bool


class ConversationResponse(BaseModel):
    conversation_id: int
    participant_ids: list[int]
    service_id: Optional[str] = None
    service_title: Optional[str] = None
    created: bool = False

    @model_validator(mode="after")
    def _sorted_participants(self) -> "ConversationResponse":
        self.participant_ids = sorted(self.participant_ids)
        return self
