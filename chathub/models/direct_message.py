from sqlalchemy.orm import relationship
from sqlalchemy import Column, ForeignKey, Text, DateTime, Enum, Integer
from sqlalchemy.sql import func

from .base import Base
from chathub.schemas.message import MessageType

class DirectMessage(Base):
    __tablename__ = "direct_messages"

    content = Column(Text, nullable=False)
    message_type = Column(
        Enum(MessageType, name="message_type", values_callable=lambda e: [m.value for m in e]),
        default=MessageType.TEXT,
        nullable=False,
    )

    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    recipient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    sender = relationship("User", foreign_keys=[sender_id])
    recipient = relationship("User", foreign_keys=[recipient_id])

    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<DirectMessage(id={self.id}, sender_id={self.sender_id}, recipient_id={self.recipient_id})>"
