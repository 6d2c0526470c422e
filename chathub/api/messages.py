from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from typing import List, Optional

from chathub.dependencies.auth_dependencies import get_current_user
from chathub.dependencies.service_dependencies import (
    get_chat_service,
    get_notification_service,
    get_reaction_service,
    get_read_receipt_service,
)
from chathub.models.user import User
from ..schemas.message import MessageResponse, ReactionGroup, ReadReceiptResponse
from ..services.chat_service import ChatService
from ..services.notification_service import NotificationService
from ..services.reaction_service import ReactionService
from ..services.read_receipt_service import ReadReceiptService

router = APIRouter(prefix="/api/chat", tags=["messages"])

@router.post("/upload", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    file: UploadFile = File(...),
    room_id: int = Form(...),
    reply_to_id: Optional[int] = Form(None),
    current_user: User = Depends(get_current_user),
    chat_service: ChatService = Depends(get_chat_service),
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Upload a file into a room as an image or file message.
    """
    message = await chat_service.send_file_message(
        sender_id=current_user.id,
        room_id=room_id,
        file=file.file,
        filename=file.filename,
        content_type=file.content_type,
        reply_to_id=reply_to_id,
    )
    await notification_service.room_message(message)
    return message

@router.get("/messages/{message_id}/reactions", response_model=List[ReactionGroup])
async def get_reactions(
    message_id: int,
    current_user: User = Depends(get_current_user),
    reaction_service: ReactionService = Depends(get_reaction_service)
):
    """
    Reactions on a message grouped by emoji.
    """
    return await reaction_service.list_for_message(message_id)

@router.post("/messages/{message_id}/read", response_model=ReadReceiptResponse)
async def mark_as_read(
    message_id: int,
    current_user: User = Depends(get_current_user),
    read_receipt_service: ReadReceiptService = Depends(get_read_receipt_service),
    notification_service: NotificationService = Depends(get_notification_service)
):
    room_id, receipt = await read_receipt_service.mark_read(message_id, current_user.id)
    await notification_service.message_read(room_id, receipt)
    return receipt

@router.get("/messages/{message_id}/receipts", response_model=List[ReadReceiptResponse])
async def get_receipts(
    message_id: int,
    current_user: User = Depends(get_current_user),
    read_receipt_service: ReadReceiptService = Depends(get_read_receipt_service)
):
    """
    Who has read a message, earliest reader first.
    """
    return await read_receipt_service.receipts(message_id)
