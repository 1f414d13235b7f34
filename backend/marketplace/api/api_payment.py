from fastapi import APIRouter, Depends, status
from typing import Any
import logging

from ..models.user import User
from ..schemas.payment import (
    PaymentAuthorizeRequest,
    PaymentAuthorizeResponse,
    PaymentCaptureRequest,
    PaymentCaptureResponse,
    PaymentRefundRequest,
    PaymentRefundResponse,
)
from ..services.booking_state_machine import BookingStateMachine
from ..services.ledger_gateway import from_minor_units
from .dependencies import get_current_active_client, get_state_machine

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])

# Payment invariants:
# - The backend computes the charge from the booking; a client-supplied total only has to agree with it.
# - Funds are held (manual capture) on confirm, captured on completion, released or refunded on cancel.
# - A processor failure leaves the booking exactly as it was.


@router.post("/authorize", response_model=PaymentAuthorizeResponse, status_code=status.HTTP_201_CREATED)
def authorize_payment(
    payment_in: PaymentAuthorizeRequest,
    current_user: User = Depends(get_current_active_client),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    """Hold the booking total on the client's card and confirm the booking."""
    outcome = machine.authorize_payment(
        current_user.id,
        payment_in.booking_id,
        payment_in.total_amount,
        payment_in.service_provider_id,
        currency=payment_in.currency,
        application_fee_amount=payment_in.application_fee_amount,
    )
    auth = outcome.authorization
    logger.info(
        "payment_authorized booking=%s intent=%s duplicate=%s",
        outcome.booking.id,
        auth.payment_intent_id if auth else None,
        outcome.duplicate,
    )
    return PaymentAuthorizeResponse(
        booking_id=outcome.booking.id,
        payment_intent_id=auth.payment_intent_id if auth else "",
        client_secret=auth.client_secret if auth else None,
        status=auth.status if auth else "",
        amount=from_minor_units(auth.amount) if auth else outcome.booking.amount_due,
        currency=auth.currency if auth else outcome.booking.currency,
        booking_status=outcome.booking.status.value,
        duplicate=outcome.duplicate,
    )


@router.post("/capture", response_model=PaymentCaptureResponse)
def capture_payment(
    payment_in: PaymentCaptureRequest,
    current_user: User = Depends(get_current_active_client),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    """Release held funds to the provider and complete the booking."""
    outcome = machine.capture_payment(current_user.id, payment_in.payment_intent_id)
    return PaymentCaptureResponse(
        booking_id=outcome.booking.id,
        payment_intent_id=payment_in.payment_intent_id,
        status=outcome.capture.status,
        amount_received=from_minor_units(outcome.capture.amount_received),
        booking_status=outcome.booking.status.value,
        reviewable=outcome.reviewable,
        duplicate=outcome.duplicate,
    )


@router.post("/refund", response_model=PaymentRefundResponse)
def refund_payment(
    payment_in: PaymentRefundRequest,
    current_user: User = Depends(get_current_active_client),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    """Cancel an uncaptured hold, or refund a captured payment."""
    outcome = machine.refund_payment(current_user.id, payment_in.payment_intent_id, payment_in.reason)
    return PaymentRefundResponse(
        booking_id=outcome.booking.id,
        payment_intent_id=payment_in.payment_intent_id,
        refund_id=outcome.refund.refund_id,
        status=outcome.refund.status,
        refunded_amount=from_minor_units(outcome.refund.refunded_amount),
        booking_status=outcome.booking.status.value,
        duplicate=outcome.duplicate,
    )
