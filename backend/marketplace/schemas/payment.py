from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, Field


class PaymentAuthorizeRequest(BaseModel):
    booking_id: int
    total_amount: Annotated[Decimal, Field(gt=0)]
    currency: Optional[str] = None
    service_provider_id: int
    # Platform fee in major units; defaults to the configured rate
    application_fee_amount: Optional[Annotated[Decimal, Field(ge=0)]] = None


class PaymentAuthorizeResponse(BaseModel):
    booking_id: int
    payment_intent_id: str
    client_secret: Optional[str] = None
    status: str
    amount: Decimal
    currency: str
    booking_status: str
    duplicate: bool = False


class PaymentCaptureRequest(BaseModel):
    payment_intent_id: str


class PaymentCaptureResponse(BaseModel):
    booking_id: int
    payment_intent_id: str
    status: str
    amount_received: Decimal
    booking_status: str
    reviewable: bool = False
    duplicate: bool = False


class PaymentRefundRequest(BaseModel):
    payment_intent_id: str
    reason: Optional[str] = None


class PaymentRefundResponse(BaseModel):
    booking_id: int
    payment_intent_id: str
    refund_id: Optional[str] = None
    status: str
    refunded_amount: Decimal
    booking_status: str
    duplicate: bool = False
