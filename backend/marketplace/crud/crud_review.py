import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from .. import models
from ..database import SessionLocal, get_db_session
from ..services.review_gate import is_reviewable
from ..utils.errors import AccessDenied, InvalidTransition, ValidationError

logger = logging.getLogger(__name__)


class ReviewRepository:
    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def for_booking(self, booking: models.Booking) -> List[models.Review]:
        with get_db_session(self._session_factory) as db:
            return (
                db.query(models.Review)
                .filter(
                    models.Review.service_id == booking.service_id,
                    models.Review.transaction_id == booking.id,
                )
                .order_by(models.Review.created_at.desc())
                .all()
            )

    def for_provider(self, provider_id: int, skip: int = 0, limit: int = 100) -> List[models.Review]:
        with get_db_session(self._session_factory) as db:
            return (
                db.query(models.Review)
                .filter(models.Review.service_provider_id == provider_id)
                .order_by(models.Review.created_at.desc())
                .offset(skip)
                .limit(limit)
                .all()
            )

    def create(
        self,
        booking: models.Booking,
        reviewer_id: int,
        rating: int,
        comment: Optional[str] = None,
    ) -> models.Review:
        """Record the client's review of a booking. One review per booking."""
        if reviewer_id != booking.client_id:
            raise AccessDenied("Only the client of this booking can review it.", booking_id=booking.id)
        if not 1 <= int(rating) <= 5:
            raise ValidationError(
                "Rating must be between 1 and 5.", booking_id=booking.id, field_errors={"rating": "out_of_range"}
            )
        if not is_reviewable(booking, self.for_booking(booking)):
            raise InvalidTransition(
                "This booking cannot be reviewed.", booking_id=booking.id, attempted="review"
            )
        review = models.Review(
            service_id=booking.service_id,
            transaction_id=booking.id,
            reviewer_id=reviewer_id,
            service_provider_id=booking.service_provider_id,
            rating=int(rating),
            comment=comment,
        )
        with get_db_session(self._session_factory) as db:
            db.add(review)
            try:
                db.commit()
            except IntegrityError as exc:
                # Lost a race with another submission for the same booking.
                db.rollback()
                raise InvalidTransition(
                    "This booking has already been reviewed.", booking_id=booking.id, attempted="review"
                ) from exc
            db.refresh(review)
        logger.info("review_created booking=%s rating=%s", booking.id, review.rating)
        return review
