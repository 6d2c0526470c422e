from sqlalchemy.orm import relationship
from sqlalchemy import Column, ForeignKey, Text, DateTime, Enum, Integer, String
from sqlalchemy.sql import func

from .base import Base
from chathub.schemas.message import MessageType

class Message(Base):
    __tablename__ = "messages"
    
    content = Column(Text, nullable=False)
    message_type = Column(
        Enum(MessageType, name="message_type", values_callable=lambda e: [m.value for m in e]),
        default=MessageType.TEXT,
        nullable=False,
    )
    
    # Sender information
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    sender = relationship("User", foreign_keys=[sender_id])
    
    room_id = Column(Integer, ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    reply_to_id = Column(Integer, ForeignKey("messages.id", ondelete="SET NULL"), nullable=True)
    
    # Attachment metadata
    file_url = Column(String(500), nullable=True)
    file_name = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)
    
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    def __repr__(self):
        return f"<Message(id={self.id}, sender_id={self.sender_id}, content='{self.content[:50]}...')>"
