from typing import Any, Dict, Optional
from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)


def error_response(
    message: str,
    field_errors: Dict[str, str],
    code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
    *,
    error_code: Optional[str] = None,
    **extra: Any,
) -> HTTPException:
    """Return an HTTPException with a consistent structure and log details."""
    logger.error("%s %s", message, field_errors)
    detail: Dict[str, Any] = {"message": message, "field_errors": field_errors}
    if error_code is not None:
        detail["code"] = error_code
    detail.update(extra)
    return HTTPException(status_code=code, detail=detail)


class BookingError(Exception):
    """Base class for failures surfaced by the booking core.

    Carries the booking id and the attempted target status so callers can
    build a user-facing message without re-reading state.
    """

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "booking_error"

    def __init__(
        self,
        message: str,
        *,
        booking_id: Optional[int] = None,
        attempted: Optional[str] = None,
        field_errors: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.booking_id = booking_id
        self.attempted = attempted
        self.field_errors = dict(field_errors or {})

    def to_http(self) -> HTTPException:
        extra: Dict[str, Any] = {}
        if self.booking_id is not None:
            extra["booking_id"] = self.booking_id
        if self.attempted is not None:
            extra["attempted"] = self.attempted
        return error_response(self.message, self.field_errors, self.status_code, error_code=self.code, **extra)


class InvalidTransition(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"


class StaleState(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "stale_state"


class NotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class ValidationError(BookingError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"


class AccessDenied(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "access_denied"


class AuthRequired(BookingError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "auth_required"


class AuthExpired(AuthRequired):
    code = "auth_expired"


class PaymentGatewayError(BookingError):
    """The payment processor call failed; the booking was left unchanged."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "payment_gateway_error"


class InvalidPaymentState(PaymentGatewayError):
    """The payment intent is not in a state that allows the requested operation."""

    status_code = status.HTTP_409_CONFLICT
    code = "invalid_payment_state"


PAYMENT_FAILED_MESSAGE = "Payment step failed; booking unchanged. No charge was made."
