from fastapi import APIRouter, Depends, Query, status
from typing import List, Optional

from ..schemas.message import MessageCreateRequest, MessageResponse
from ..schemas.presence import PresenceStatus
from ..schemas.room import CreateRoomRequest, RoomKind, RoomResponse
from ..services.chat_service import ChatService
from ..services.notification_service import NotificationService
from ..services.presence_service import PresenceService
from ..services.room_service import RoomService
from chathub.dependencies.service_dependencies import (
    get_chat_service,
    get_notification_service,
    get_presence_service,
    get_room_service,
)
from chathub.dependencies.auth_dependencies import get_current_user
from chathub.models.user import User

router = APIRouter(prefix="/api/chat/rooms", tags=["rooms"])

@router.get("", response_model=List[RoomResponse])
async def list_rooms(
    kind: Optional[RoomKind] = Query(None, description="Filter by room kind"),
    category: Optional[str] = Query(None, description="Filter by category"),
    current_user: User = Depends(get_current_user),
    room_service: RoomService = Depends(get_room_service)
):
    """
    List rooms with their live participants, most recently active first.
    """
    return await room_service.list_rooms(kind=kind, category=category)

@router.post("", response_model=RoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
    request: CreateRoomRequest,
    current_user: User = Depends(get_current_user),
    room_service: RoomService = Depends(get_room_service)
):
    """
    Create a new room.

    Args:
        request: Room creation request
        current_user: Authenticated user details
        room_service: Room service instance

    Returns:
        RoomResponse with created room details
    """
    return await room_service.create_room(
        user_id=current_user.id,
        request=request
    )

@router.get("/{room_id}", response_model=RoomResponse)
async def get_room(
    room_id: int,
    current_user: User = Depends(get_current_user),
    room_service: RoomService = Depends(get_room_service)
):
    return await room_service.get_room_details(room_id)

@router.get("/{room_id}/messages", response_model=List[MessageResponse])
async def get_room_messages(
    room_id: int,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    limit: int = Query(50, ge=1, le=100, description="Number of messages to return"),
    offset: int = Query(0, ge=0, description="Number of messages to skip")
):
    """
    Retrieve message history for a room.

    Args:
        room_id: ID of the room
        limit: Number of messages to return
        offset: Number of newest messages to skip

    Returns:
        List of MessageResponse objects, oldest first
    """
    return await chat_service.get_room_messages(
        room_id=room_id,
        limit=limit,
        offset=offset,
    )

@router.post("/{room_id}/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_room_message(
    room_id: int,
    request: MessageCreateRequest,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Send a message to a room the caller is in. Connected participants
    receive it in real time.
    """
    message = await chat_service.send_room_message(
        sender_id=current_user.id,
        room_id=room_id,
        request=request,
    )
    await notification_service.room_message(message)
    return message

@router.post("/{room_id}/join")
async def join_room(
    room_id: int,
    current_user: User = Depends(get_current_user),
    presence_service: PresenceService = Depends(get_presence_service),
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Join a room, subject to its capacity. Rejoining while already live
    is announced only once.
    """
    was_live = await presence_service.is_live(current_user.id, room_id)
    presence = await presence_service.upsert(current_user.id, room_id, PresenceStatus.ONLINE)
    if not was_live:
        await notification_service.presence_changed("user_joined", room_id, {
            "user_id": current_user.id,
            "username": current_user.username,
            "display_name": current_user.display_name,
            "status": presence.status.value,
        })
    return {"message": "Successfully joined room", "room_id": room_id, "status": presence.status.value}

@router.post("/{room_id}/leave")
async def leave_room(
    room_id: int,
    current_user: User = Depends(get_current_user),
    presence_service: PresenceService = Depends(get_presence_service),
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Leave a room. Leaving a room the caller isn't live in announces nothing.
    """
    was_live = await presence_service.is_live(current_user.id, room_id)
    await presence_service.upsert(current_user.id, room_id, PresenceStatus.OFFLINE)
    if was_live:
        await notification_service.presence_changed("user_left", room_id, {
            "user_id": current_user.id,
            "username": current_user.username,
            "display_name": current_user.display_name,
        })
    return {"message": "Successfully left room", "room_id": room_id}
