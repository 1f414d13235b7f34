from .crud_user import user, UserDirectory
from .crud_booking import BookingStore, booking_to_payload
from .crud_review import ReviewRepository

# Usage: `crud.user.get_user(db, ...)`, or construct the stores with a session factory.
