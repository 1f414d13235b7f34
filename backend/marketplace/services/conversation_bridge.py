import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from sqlalchemy import and_, or_
from sqlalchemy.orm import sessionmaker

from .. import models
from ..database import SessionLocal, get_db_session
from ..utils.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationHandle:
    conversation_id: int
    participant_ids: Tuple[int, int]
    service_id: Optional[str] = None
    service_title: Optional[str] = None
    created: bool = False


class ConversationBridge(Protocol):
    def get_or_create_conversation(
        self,
        user_a: int,
        user_b: int,
        service_id: Optional[str] = None,
        service_title: Optional[str] = None,
    ) -> ConversationHandle: ...


class SqlConversationBridge:
    """Conversation handles stored alongside bookings.

    A conversation is identified by the unordered participant pair plus the
    service it is about; asking twice returns the same handle.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None) -> None:
        self._session_factory = session_factory or SessionLocal

    def get_or_create_conversation(
        self,
        user_a: int,
        user_b: int,
        service_id: Optional[str] = None,
        service_title: Optional[str] = None,
    ) -> ConversationHandle:
        if int(user_a) == int(user_b):
            raise ValidationError(
                "Cannot start a conversation with yourself.",
                field_errors={"participant": "same_user"},
            )
        low, high = sorted((int(user_a), int(user_b)))
        service_key = str(service_id) if service_id is not None else None
        with get_db_session(self._session_factory) as db:
            pair = or_(
                and_(models.Conversation.participant1_id == low, models.Conversation.participant2_id == high),
                and_(models.Conversation.participant1_id == high, models.Conversation.participant2_id == low),
            )
            query = db.query(models.Conversation).filter(pair)
            if service_key is None:
                query = query.filter(models.Conversation.service_id.is_(None))
            else:
                query = query.filter(models.Conversation.service_id == service_key)
            existing = query.order_by(models.Conversation.id.asc()).first()
            if existing is not None:
                return ConversationHandle(
                    conversation_id=existing.id,
                    participant_ids=(low, high),
                    service_id=existing.service_id,
                    service_title=existing.service_title,
                )
            conv = models.Conversation(
                participant1_id=low,
                participant2_id=high,
                service_id=service_key,
                service_title=service_title,
                last_message="",
            )
            db.add(conv)
            db.commit()
            db.refresh(conv)
        logger.info("conversation_created id=%s service=%s", conv.id, service_key)
        return ConversationHandle(
            conversation_id=conv.id,
            participant_ids=(low, high),
            service_id=service_key,
            service_title=service_title,
            created=True,
        )
