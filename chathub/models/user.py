from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.sql import func
from chathub.models.base import Base

class User(Base):
    """
    Account as seen by chat. Other hub features own the rest of the profile.
    """
    __tablename__ = "users"

    username = Column(String(50), unique=True, nullable=False, index=True)
    display_name = Column(String(50), nullable=False)
    email = Column(String(100), unique=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)

    # Verified creators get a badge next to their name in chat.
    is_verified_creator = Column(Boolean, default=False, nullable=False)
    content_category = Column(String(50), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', creator={self.is_verified_creator})>"
