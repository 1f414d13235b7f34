from functools import lru_cache

from fastapi import Depends

from ..database import SessionLocal, get_db  # noqa: F401 - re-exported for routers
from ..models.user import User
from ..crud.crud_booking import BookingStore
from ..crud.crud_review import ReviewRepository
from ..crud.crud_user import UserDirectory
from ..realtime.bus import bus
from ..realtime.events import BookingEventHub
from ..services.booking_state_machine import BookingStateMachine
from ..services.conversation_bridge import SqlConversationBridge
from ..services.ledger_gateway import StripeLedgerGateway
from ..utils.errors import AuthRequired
from .auth import get_current_user


def get_current_active_client(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_active:
        raise AuthRequired("Inactive user")
    # Any active user can be a client for actions like creating a booking
    return current_user


@lru_cache
def get_event_hub() -> BookingEventHub:
    return BookingEventHub(bus=bus)


@lru_cache
def get_booking_store() -> BookingStore:
    return BookingStore(session_factory=SessionLocal, hub=get_event_hub())


@lru_cache
def get_user_directory() -> UserDirectory:
    return UserDirectory(SessionLocal)


@lru_cache
def get_ledger() -> StripeLedgerGateway:
    return StripeLedgerGateway()


@lru_cache
def get_state_machine() -> BookingStateMachine:
    return BookingStateMachine(
        store=get_booking_store(),
        ledger=get_ledger(),
        users=get_user_directory(),
        reviews=ReviewRepository(SessionLocal),
        conversations=SqlConversationBridge(SessionLocal),
    )
