from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from chathub.core.config import settings

class RoomKind(str, Enum):
    TOPIC = "topic"
    REGION = "region"

class CreateRoomRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Room name")
    description: Optional[str] = Field(default=None, max_length=1000)
    kind: RoomKind = Field(..., description="Whether the room is topic or region based")
    category: str = Field(..., min_length=1, max_length=50)
    subcategory: Optional[str] = Field(default=None, max_length=50)
    is_private: bool = False
    max_users: int = Field(
        default=settings.room_default_capacity,
        ge=settings.room_min_capacity,
        le=settings.room_max_capacity,
        description="Room capacity",
    )

class RoomMemberResponse(BaseModel):
    user_id: int
    username: str
    display_name: str

    class Config:
        from_attributes = True

class RoomResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    kind: RoomKind
    category: str
    subcategory: Optional[str] = None
    is_private: bool
    max_users: int
    live_count: int
    created_by: int
    created_at: datetime
    online_participants: List[RoomMemberResponse] = []
    message_count: int = 0

    class Config:
        from_attributes = True
