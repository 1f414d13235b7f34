import logging
from sqlalchemy import event
from sqlalchemy.orm.attributes import NO_VALUE

from .. import models

logger = logging.getLogger(__name__)

_registered = False


def _listener_factory(model_name: str):
    """Return a SQLAlchemy attribute listener that logs status changes."""

    def _status_change(target, value, oldvalue, initiator):  # noqa: ANN001
        if oldvalue is NO_VALUE or oldvalue is None or oldvalue == value:
            return value
        logger.info(
            "%s id=%s status changed from %s to %s",
            model_name,
            getattr(target, "id", "unknown"),
            getattr(oldvalue, "value", oldvalue),
            getattr(value, "value", value),
        )
        return value

    return _status_change


def register_status_listeners() -> None:
    """Attach listeners for ORM-level status assignments on bookings.

    Conditional UPDATEs issued by the booking store bypass attribute events;
    the store logs those itself.
    """
    global _registered
    if _registered:
        return
    event.listen(
        models.Booking.status,  # type: ignore[arg-type]
        "set",
        _listener_factory(models.Booking.__name__),
        retval=False,
        propagate=True,
    )
    _registered = True
