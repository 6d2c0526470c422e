from enum import Enum
from datetime import datetime
from typing import Optional
from pydantic import BaseModel

class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"

class PresenceResponse(BaseModel):
    user_id: int
    username: str
    display_name: str
    room_id: int
    room_name: Optional[str] = None
    status: PresenceStatus
    last_seen: datetime

    class Config:
        from_attributes = True
