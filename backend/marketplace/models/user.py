# backend/marketplace/models/user.py

from sqlalchemy import Boolean, Column, Integer, String, Enum, DateTime
from sqlalchemy.orm import relationship
from .base import BaseModel
import enum

class UserType(str, enum.Enum):
    """Enumeration of all supported user roles."""

    SERVICE_PROVIDER = "service_provider"
    CLIENT = "client"

class User(BaseModel):
    __tablename__ = "users"

    id           = Column(Integer, primary_key=True, index=True)
    email        = Column(String, unique=True, index=True, nullable=False)
    password     = Column(String, nullable=False)
    first_name   = Column(String, nullable=False)
    last_name    = Column(String, nullable=False)
    user_type    = Column(Enum(UserType), nullable=False)
    is_active    = Column(Boolean, default=True)
    # Connected payout account at the payment processor (providers only)
    payout_account_id = Column(String, nullable=True)
    # Session/refresh token hardening
    refresh_token_hash = Column(String, nullable=True)
    refresh_token_expires_at = Column(DateTime, nullable=True)

    bookings_as_client = relationship(
        "Booking",
        foreign_keys="Booking.client_id",
        back_populates="client",
    )
    bookings_as_provider = relationship(
        "Booking",
        foreign_keys="Booking.service_provider_id",
        back_populates="service_provider",
    )
