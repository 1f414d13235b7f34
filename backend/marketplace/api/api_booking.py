from fastapi import APIRouter, Depends, Path, Query, status
from typing import Any, List
import logging

from ..models.user import User
from ..schemas.booking import (
    BookingCreate,
    BookingResponse,
    ConversationResponse,
    ReviewableResponse,
    TransitionRequest,
)
from ..crud.crud_booking import BookingStore
from ..services.booking_state_machine import BookingStateMachine
from ..utils.errors import AccessDenied
from .dependencies import (
    get_booking_store,
    get_current_active_client,
    get_current_user,
    get_state_machine,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["bookings"])


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    *,
    booking_in: BookingCreate,
    current_client: User = Depends(get_current_active_client),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    """Request a booking from a service provider. Starts in ``pending``."""
    return machine.create_booking(current_client.id, booking_in)


@router.get("/me/client", response_model=List[BookingResponse])
def read_my_client_bookings(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    store: BookingStore = Depends(get_booking_store),
) -> Any:
    return store.list_by_client(current_user.id, skip=skip, limit=limit)


@router.get("/me/provider", response_model=List[BookingResponse])
def read_my_provider_bookings(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    store: BookingStore = Depends(get_booking_store),
) -> Any:
    return store.list_by_provider(current_user.id, skip=skip, limit=limit)


@router.get("/{booking_id}", response_model=BookingResponse)
def read_booking(
    booking_id: int = Path(..., title="The ID of the booking"),
    current_user: User = Depends(get_current_user),
    store: BookingStore = Depends(get_booking_store),
) -> Any:
    booking = store.get_by_id(booking_id)
    if current_user.id not in (booking.client_id, booking.service_provider_id):
        raise AccessDenied("You are not a party to this booking.", booking_id=booking_id)
    return booking


@router.post("/{booking_id}/transitions", response_model=BookingResponse)
def transition_booking(
    *,
    booking_id: int = Path(..., title="The ID of the booking"),
    body: TransitionRequest,
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    """Move a booking along its lifecycle.

    Payment-backed steps (confirm, complete, refund) call the payment
    processor; if that fails the booking is left unchanged.
    """
    return machine.transition(
        booking_id,
        current_user.id,
        body.target_status,
        body.payload,
        reason=body.reason,
    )


@router.post("/{booking_id}/conversation", response_model=ConversationResponse)
def open_booking_conversation(
    booking_id: int = Path(..., title="The ID of the booking"),
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    handle = machine.open_conversation(booking_id, current_user.id)
    return ConversationResponse(
        conversation_id=handle.conversation_id,
        participant_ids=list(handle.participant_ids),
        service_id=handle.service_id,
        service_title=handle.service_title,
        created=handle.created,
    )


@router.get("/{booking_id}/reviewable", response_model=ReviewableResponse)
def read_booking_reviewable(
    booking_id: int = Path(..., title="The ID of the booking"),
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    booking = machine.store.get_by_id(booking_id)
    if current_user.id not in (booking.client_id, booking.service_provider_id):
        raise AccessDenied("You are not a party to this booking.", booking_id=booking_id)
    return ReviewableResponse(booking_id=booking_id, reviewable=machine.is_reviewable(booking_id))
