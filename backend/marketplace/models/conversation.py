from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey

from .base import BaseModel


class Conversation(BaseModel):
    __tablename__ = "conversations"

    id              = Column(Integer, primary_key=True, index=True)
    participant1_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    participant2_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    service_id      = Column(String, nullable=True, index=True)
    service_title   = Column(String, nullable=True)
    last_message    = Column(Text, nullable=True, default="")
    last_message_at = Column(DateTime, nullable=True)
