from fastapi import APIRouter, Depends, Query, status
from typing import List

from chathub.dependencies.auth_dependencies import get_current_user
from chathub.dependencies.service_dependencies import get_chat_service, get_notification_service
from chathub.models.user import User
from ..schemas.message import ConversationResponse, DirectMessageCreateRequest, DirectMessageResponse
from ..services.chat_service import ChatService
from ..services.notification_service import NotificationService

router = APIRouter(prefix="/api/chat/direct", tags=["direct messages"])

@router.get("", response_model=List[ConversationResponse])
async def get_conversations(
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service)
):
    """
    List the caller's conversations with the latest message of each.
    """
    return await chat_service.get_conversations(current_user.id)

@router.post("", response_model=DirectMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_direct_message(
    request: DirectMessageCreateRequest,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Send a direct message. A connected recipient receives it in real time.
    """
    message = await chat_service.send_direct_message(current_user.id, request)
    await notification_service.direct_message(message)
    return message

@router.get("/{user_id}", response_model=List[DirectMessageResponse])
async def get_direct_messages(
    user_id: int,
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    limit: int = Query(50, ge=1, le=100, description="Number of messages to return"),
    offset: int = Query(0, ge=0, description="Number of messages to skip")
):
    """
    Retrieve the conversation with another user, oldest first.
    """
    return await chat_service.get_direct_messages(
        user_id=current_user.id,
        other_user_id=user_id,
        limit=limit,
        offset=offset,
    )
