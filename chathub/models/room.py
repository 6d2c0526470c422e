from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, Enum, func
from sqlalchemy.orm import relationship
from chathub.models.base import Base
from chathub.schemas.room import RoomKind

class ChatRoom(Base):
    __tablename__ = "chat_rooms"
    
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    kind = Column(
        Enum(RoomKind, name="room_kind", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
    )
    category = Column(String(50), nullable=False)
    subcategory = Column(String(50), nullable=True)
    is_private = Column(Boolean, default=False, nullable=False)
    max_users = Column(Integer, default=100, nullable=False)
    # Number of presence rows in this room whose status is not offline.
    live_count = Column(Integer, default=0, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    creator = relationship("User", foreign_keys=[created_by])
    
    def __repr__(self):
        return f"<ChatRoom(id={self.id}, name='{self.name}', kind='{self.kind}')>"
