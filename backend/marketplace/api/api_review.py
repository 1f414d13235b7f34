from fastapi import APIRouter, Depends, status, Path
from typing import List, Any

from ..models.user import User
from ..schemas.review import ReviewCreate, ReviewResponse
from ..services.booking_state_machine import BookingStateMachine
from ..utils.errors import AccessDenied
from .dependencies import get_current_user, get_current_active_client, get_state_machine

# Using a nested route for creating reviews under bookings
router = APIRouter(tags=["Reviews"])


@router.post(
    "/bookings/{booking_id}/reviews",
    response_model=ReviewResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_review_for_booking(
    *,
    booking_id: int = Path(..., title="The ID of the booking to review"),
    review_in: ReviewCreate,
    current_client: User = Depends(get_current_active_client),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    """
    Create a review for a specific booking.
    Only the client who made the booking can review it, once work is handed
    over (awaiting review) or completed, and only once.
    """
    return machine.record_review(booking_id, current_client.id, review_in.rating, review_in.comment)


@router.get("/bookings/{booking_id}/reviews", response_model=List[ReviewResponse])
def read_reviews_for_booking(
    booking_id: int = Path(..., title="The ID of the booking"),
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    booking = machine.store.get_by_id(booking_id)
    if current_user.id not in (booking.client_id, booking.service_provider_id):
        raise AccessDenied("You are not a party to this booking.", booking_id=booking_id)
    return machine.reviews.for_booking(booking)


@router.get("/service-providers/{provider_id}/reviews", response_model=List[ReviewResponse])
def read_reviews_for_provider(
    provider_id: int = Path(..., title="The user ID of the service provider"),
    machine: BookingStateMachine = Depends(get_state_machine),
) -> Any:
    return machine.reviews.for_provider(provider_id)
