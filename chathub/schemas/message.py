from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime
from typing import List, Optional

from chathub.core.config import settings

class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"

class MessageCreateRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=settings.message_max_length, description="Message content")
    message_type: MessageType = Field(default=MessageType.TEXT, description="Type of message")
    reply_to_id: Optional[int] = Field(default=None, description="Message in the same room being replied to")

class DirectMessageCreateRequest(BaseModel):
    recipient_id: int = Field(..., description="ID of the recipient")
    content: str = Field(..., min_length=1, max_length=settings.message_max_length)
    message_type: MessageType = Field(default=MessageType.TEXT)

class FileAttachment(BaseModel):
    url: str
    name: str
    size: int

class ReactionGroup(BaseModel):
    emoji: str
    count: int
    users: List[str]
    user_ids: List[int]

class ReplyPreview(BaseModel):
    id: int
    content: str
    sender_id: int
    sender_display_name: str

class MessageResponse(BaseModel):
    id: int
    room_id: int
    sender_id: int
    sender_username: str
    sender_display_name: str
    content: str
    message_type: MessageType
    reply_to_id: Optional[int] = None
    reply_to: Optional[ReplyPreview] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime
    reactions: List[ReactionGroup] = []
    read_count: int = 0

class DirectMessageResponse(BaseModel):
    id: int
    sender_id: int
    sender_username: str
    sender_display_name: str
    recipient_id: int
    recipient_username: str
    recipient_display_name: str
    content: str
    message_type: MessageType
    read_at: Optional[datetime] = None
    created_at: datetime

class ConversationResponse(BaseModel):
    user_id: int
    username: str
    display_name: str
    last_message: DirectMessageResponse

class ReadReceiptResponse(BaseModel):
    message_id: int
    user_id: int
    display_name: str
    read_at: datetime
