from .user import User, UserType
from .booking import Booking, IMMUTABLE_FIELDS
from .booking_status import BookingStatus, TERMINAL_STATUSES
from .booking_action import BookingAction
from .review import Review
from .conversation import Conversation

__all__ = [
    "User",
    "UserType",
    "Booking",
    "IMMUTABLE_FIELDS",
    "BookingStatus",
    "TERMINAL_STATUSES",
    "BookingAction",
    "Review",
    "Conversation",
]
