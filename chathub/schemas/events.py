from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter

from chathub.core.config import settings
from chathub.schemas.message import MessageType

# Inbound realtime intents. Every frame a client sends must match exactly one
# of these models, selected by its "type" field.

class AuthenticateEvent(BaseModel):
    type: Literal["authenticate"]
    token: str = Field(..., min_length=1)

class JoinRoomEvent(BaseModel):
    type: Literal["join_room"]
    room_id: int

class LeaveRoomEvent(BaseModel):
    type: Literal["leave_room"]
    room_id: int

class SendRoomMessageEvent(BaseModel):
    type: Literal["send_room_message"]
    room_id: int
    content: str = Field(..., min_length=1, max_length=settings.message_max_length)
    message_type: MessageType = MessageType.TEXT
    reply_to_id: Optional[int] = None

class SendDirectMessageEvent(BaseModel):
    type: Literal["send_direct_message"]
    recipient_id: int
    content: str = Field(..., min_length=1, max_length=settings.message_max_length)
    message_type: MessageType = MessageType.TEXT

class TypingEvent(BaseModel):
    type: Literal["typing"]
    room_id: int
    is_typing: bool = True

class DirectTypingEvent(BaseModel):
    type: Literal["typing_dm"]
    recipient_id: int
    is_typing: bool = True

class AddReactionEvent(BaseModel):
    type: Literal["add_reaction"]
    message_id: int
    emoji: str = Field(..., min_length=1, max_length=32)

class RemoveReactionEvent(BaseModel):
    type: Literal["remove_reaction"]
    message_id: int
    emoji: str = Field(..., min_length=1, max_length=32)

class MarkAsReadEvent(BaseModel):
    type: Literal["mark_as_read"]
    message_id: int

class MarkDirectAsReadEvent(BaseModel):
    type: Literal["mark_direct_as_read"]
    direct_message_id: int

class ChangeStatusEvent(BaseModel):
    type: Literal["change_status"]
    status: Literal["online", "away", "busy"]

# WebRTC signaling payloads are relayed untouched.
class CallUserEvent(BaseModel):
    type: Literal["call_user"]
    room_id: int
    signal: Any = None
    video: bool = False

class AcceptCallEvent(BaseModel):
    type: Literal["accept_call"]
    room_id: int
    signal: Any = None

class EndCallEvent(BaseModel):
    type: Literal["end_call"]
    room_id: int

ClientEvent = Annotated[
    Union[
        AuthenticateEvent,
        JoinRoomEvent,
        LeaveRoomEvent,
        SendRoomMessageEvent,
        SendDirectMessageEvent,
        TypingEvent,
        DirectTypingEvent,
        AddReactionEvent,
        RemoveReactionEvent,
        MarkAsReadEvent,
        MarkDirectAsReadEvent,
        ChangeStatusEvent,
        CallUserEvent,
        AcceptCallEvent,
        EndCallEvent,
    ],
    Field(discriminator="type"),
]

client_event_adapter = TypeAdapter(ClientEvent)

# Fields copied onto error events so a client can tell which intent failed.
CORRELATION_FIELDS = ("room_id", "recipient_id", "message_id", "direct_message_id")


def server_event(event_type: str, data: dict) -> dict:
    """Shape an outbound frame."""
    return {"type": event_type, "data": data}
