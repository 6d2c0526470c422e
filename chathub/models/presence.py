from sqlalchemy import Column, Integer, DateTime, ForeignKey, Enum, UniqueConstraint, func
from sqlalchemy.orm import relationship
from .base import Base
from chathub.schemas.presence import PresenceStatus

class Presence(Base):
    __tablename__ = "user_presences"
    __table_args__ = (
        UniqueConstraint("user_id", "room_id", name="uq_user_presences_user_room"),
    )
    
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    room_id = Column(Integer, ForeignKey("chat_rooms.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(
        Enum(PresenceStatus, name="presence_status", values_callable=lambda e: [m.value for m in e]),
        default=PresenceStatus.ONLINE,
        nullable=False,
    )
    last_seen = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    joined_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    
    user = relationship("User")
    room = relationship("ChatRoom")
    
    def __repr__(self):
        return f"<Presence(user_id={self.user_id}, room_id={self.room_id}, status='{self.status}')>"
