import enum

class BookingStatus(str, enum.Enum):
    """Central booking status enumeration used across the application."""
    PENDING = "pending"
    PENDING_BUYER = "pending-buyer"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    AWAITING_REVIEW = "awaiting-review"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @classmethod
    def _missing_(cls, value: object):
        """Accept underscore spellings (``pending_buyer``) from older clients."""
        if isinstance(value, str):
            normalized = value.strip().lower().replace("_", "-")
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        BookingStatus.COMPLETED,
        BookingStatus.DECLINED,
        BookingStatus.CANCELLED,
        BookingStatus.REFUNDED,
    }
)
