from sqlalchemy import Column, Integer, Text, ForeignKey, String, UniqueConstraint

from .base import BaseModel


class Review(BaseModel):
    """Client review of a service, bound to the booking it was bought through.

    ``transaction_id`` is the booking id; the pair (service_id, transaction_id)
    is what the review gate checks for.
    """

    __tablename__ = "reviews"
    __table_args__ = (
        UniqueConstraint("service_id", "transaction_id", name="uq_reviews_service_transaction"),
    )

    id                  = Column(Integer, primary_key=True, index=True)
    service_id          = Column(String, nullable=False, index=True)
    transaction_id      = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    reviewer_id         = Column(Integer, ForeignKey("users.id"), nullable=False)
    service_provider_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    rating  = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
