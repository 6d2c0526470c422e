import os
import uuid
from typing import BinaryIO, Dict, List, Optional

from sqlalchemy import func, or_, and_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..models.direct_message import DirectMessage
from ..models.message import Message
from ..models.user import User
from ..schemas.message import (
    ConversationResponse,
    DirectMessageCreateRequest,
    DirectMessageResponse,
    FileAttachment,
    MessageCreateRequest,
    MessageResponse,
    MessageType,
    ReplyPreview,
)
from .presence_service import PresenceService
from .reaction_service import ReactionService
from .read_receipt_service import ReadReceiptService
from .room_service import RoomService
from chathub.core.config import settings
from chathub.core.exceptions import (
    MessageNotFoundException,
    MessageNotSentException,
    PermissionDeniedException,
    UserNotFoundException,
    ValidationException,
)

UPLOAD_CHUNK_BYTES = 64 * 1024


class ChatService:
    """
    Message store for room messages and direct messages.

    Every read path returns messages through `_to_responses`, which attaches
    the sender, reply preview, grouped reactions and read count.
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.room_service = RoomService(db)
        self.presence_service = PresenceService(db, room_service=self.room_service)
        self.reaction_service = ReactionService(db)
        self.read_receipt_service = ReadReceiptService(db)

    async def send_room_message(
        self,
        sender_id: int,
        room_id: int,
        request: MessageCreateRequest,
        attachment: Optional[FileAttachment] = None,
    ) -> MessageResponse:
        """
        Append a message to a room the sender is currently in.

        Raises:
            RoomNotFoundException: If the room doesn't exist
            PermissionDeniedException: If the sender has no live presence in the room
            ValidationException: If reply_to_id doesn't name a message of the same room
            MessageNotSentException: If the insert fails
        """
        await self.room_service.get_room(room_id)

        if not await self.presence_service.is_live(sender_id, room_id):
            raise PermissionDeniedException(detail="Not in this room")

        if request.reply_to_id is not None:
            reply_room = await self.db.execute(
                select(Message.room_id).filter(Message.id == request.reply_to_id)
            )
            if reply_room.scalar_one_or_none() != room_id:
                raise ValidationException(
                    detail="reply_to_id must reference a message in the same room"
                )

        message = Message(
            room_id=room_id,
            sender_id=sender_id,
            content=request.content,
            message_type=request.message_type,
            reply_to_id=request.reply_to_id,
            file_url=attachment.url if attachment else None,
            file_name=attachment.name if attachment else None,
            file_size=attachment.size if attachment else None,
        )
        self.db.add(message)
        try:
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise MessageNotSentException(detail="Failed to send message") from e

        return (await self._load_responses([message.id]))[0]

    async def get_message(self, message_id: int) -> MessageResponse:
        responses = await self._load_responses([message_id])
        if not responses:
            raise MessageNotFoundException()
        return responses[0]

    async def get_room_messages(
        self,
        room_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> List[MessageResponse]:
        """
        Retrieve a page of room history, oldest first within the page.
        Offset counts back from the newest message.
        """
        await self.room_service.get_room(room_id)

        messages = await self.db.execute(
            select(Message)
            .options(selectinload(Message.sender))
            .filter(Message.room_id == room_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
        )
        messages = messages.scalars().all()
        return await self._to_responses(list(reversed(messages)))

    async def send_file_message(
        self,
        sender_id: int,
        room_id: int,
        file: BinaryIO,
        filename: str,
        content_type: Optional[str] = None,
        reply_to_id: Optional[int] = None,
    ) -> MessageResponse:
        """
        Store an uploaded file and post it to the room as an image or file
        message. The file is written only after the sender's room access
        has been checked.

        Raises:
            ValidationException: If the file is empty or larger than the upload limit
        """
        await self.room_service.get_room(room_id)
        if not await self.presence_service.is_live(sender_id, room_id):
            raise PermissionDeniedException(detail="Not in this room")

        attachment = self._store_upload(file, filename)
        message_type = (
            MessageType.IMAGE if (content_type or "").startswith("image/") else MessageType.FILE
        )
        try:
            return await self.send_room_message(
                sender_id,
                room_id,
                MessageCreateRequest(
                    content=attachment.name[:settings.message_max_length],
                    message_type=message_type,
                    reply_to_id=reply_to_id,
                ),
                attachment=attachment,
            )
        except Exception:
            os.remove(os.path.join(settings.chat_upload_dir, os.path.basename(attachment.url)))
            raise

    def _store_upload(self, file: BinaryIO, filename: str) -> FileAttachment:
        name = os.path.basename(filename or "") or "upload"
        unique_filename = f"{uuid.uuid4().hex}-{name}"
        os.makedirs(settings.chat_upload_dir, exist_ok=True)
        file_path = os.path.join(settings.chat_upload_dir, unique_filename)

        size = 0
        with open(file_path, "wb") as buffer:
            # Reads stop one byte past the limit.
            while size <= settings.max_upload_bytes:
                chunk = file.read(min(UPLOAD_CHUNK_BYTES, settings.max_upload_bytes + 1 - size))
                if not chunk:
                    break
                buffer.write(chunk)
                size += len(chunk)

        if size == 0 or size > settings.max_upload_bytes:
            os.remove(file_path)
            raise ValidationException(
                detail=f"File must be between 1 byte and {settings.max_upload_bytes} bytes"
            )

        return FileAttachment(
            url=f"{settings.chat_upload_url_prefix}/{unique_filename}",
            name=name,
            size=size,
        )

    async def _load_responses(self, message_ids: List[int]) -> List[MessageResponse]:
        result = await self.db.execute(
            select(Message)
            .options(selectinload(Message.sender))
            .filter(Message.id.in_(message_ids))
            .order_by(Message.created_at, Message.id)
            .execution_options(populate_existing=True)
        )
        return await self._to_responses(result.scalars().all())

    async def _to_responses(self, messages: List[Message]) -> List[MessageResponse]:
        if not messages:
            return []
        message_ids = [msg.id for msg in messages]

        reply_ids = {msg.reply_to_id for msg in messages if msg.reply_to_id is not None}
        replies: Dict[int, ReplyPreview] = {}
        if reply_ids:
            result = await self.db.execute(
                select(Message)
                .options(selectinload(Message.sender))
                .filter(Message.id.in_(reply_ids))
            )
            replies = {
                reply.id: ReplyPreview(
                    id=reply.id,
                    content=reply.content,
                    sender_id=reply.sender_id,
                    sender_display_name=reply.sender.display_name,
                )
                for reply in result.scalars().all()
            }

        reactions = await self.reaction_service.grouped_views(message_ids)
        read_counts = await self.read_receipt_service.read_counts(message_ids)

        return [
            MessageResponse(
                id=msg.id,
                room_id=msg.room_id,
                sender_id=msg.sender_id,
                sender_username=msg.sender.username,
                sender_display_name=msg.sender.display_name,
                content=msg.content,
                message_type=msg.message_type,
                reply_to_id=msg.reply_to_id,
                reply_to=replies.get(msg.reply_to_id),
                file_url=msg.file_url,
                file_name=msg.file_name,
                file_size=msg.file_size,
                created_at=msg.created_at,
                reactions=reactions.get(msg.id, []),
                read_count=read_counts.get(msg.id, 0),
            )
            for msg in messages
        ]

    async def send_direct_message(
        self,
        sender_id: int,
        request: DirectMessageCreateRequest,
    ) -> DirectMessageResponse:
        """
        Append a direct message. No room or admission checks apply.

        Raises:
            UserNotFoundException: If the recipient doesn't exist
        """
        recipient = await self.db.execute(select(User.id).filter(User.id == request.recipient_id))
        if recipient.scalar_one_or_none() is None:
            raise UserNotFoundException(detail="Recipient not found")

        message = DirectMessage(
            sender_id=sender_id,
            recipient_id=request.recipient_id,
            content=request.content,
            message_type=request.message_type,
        )
        self.db.add(message)
        try:
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise MessageNotSentException(detail="Failed to send direct message") from e

        return await self.get_direct_message(message.id)

    async def get_direct_message(self, direct_message_id: int) -> DirectMessageResponse:
        result = await self.db.execute(
            select(DirectMessage)
            .options(selectinload(DirectMessage.sender), selectinload(DirectMessage.recipient))
            .filter(DirectMessage.id == direct_message_id)
            .execution_options(populate_existing=True)
        )
        message = result.scalar_one_or_none()
        if message is None:
            raise MessageNotFoundException(detail="Direct message not found")
        return self._to_direct_response(message)

    async def get_direct_messages(
        self,
        user_id: int,
        other_user_id: int,
        limit: int = 50,
        offset: int = 0,
    ) -> List[DirectMessageResponse]:
        """
        Retrieve a page of the conversation between two users, oldest first
        within the page.
        """
        result = await self.db.execute(
            select(DirectMessage)
            .options(selectinload(DirectMessage.sender), selectinload(DirectMessage.recipient))
            .filter(
                or_(
                    and_(DirectMessage.sender_id == user_id, DirectMessage.recipient_id == other_user_id),
                    and_(DirectMessage.sender_id == other_user_id, DirectMessage.recipient_id == user_id),
                )
            )
            .order_by(DirectMessage.created_at.desc(), DirectMessage.id.desc())
            .limit(limit)
            .offset(offset)
        )
        messages = result.scalars().all()
        return [self._to_direct_response(msg) for msg in reversed(messages)]

    async def get_conversations(self, user_id: int) -> List[ConversationResponse]:
        """
        One entry per conversation partner with the latest message exchanged,
        most recent conversation first.
        """
        result = await self.db.execute(
            select(DirectMessage)
            .options(selectinload(DirectMessage.sender), selectinload(DirectMessage.recipient))
            .filter(or_(DirectMessage.sender_id == user_id, DirectMessage.recipient_id == user_id))
            .order_by(DirectMessage.created_at.desc(), DirectMessage.id.desc())
        )

        conversations: Dict[int, ConversationResponse] = {}
        for msg in result.scalars().all():
            peer = msg.recipient if msg.sender_id == user_id else msg.sender
            if peer.id in conversations:
                continue
            conversations[peer.id] = ConversationResponse(
                user_id=peer.id,
                username=peer.username,
                display_name=peer.display_name,
                last_message=self._to_direct_response(msg),
            )
        return list(conversations.values())

    async def mark_direct_read(self, user_id: int, direct_message_id: int) -> DirectMessageResponse:
        """
        Mark a direct message as read. Only its recipient may do so; the
        first read time is kept.
        """
        result = await self.db.execute(
            select(DirectMessage).filter(DirectMessage.id == direct_message_id)
        )
        message = result.scalar_one_or_none()
        if message is None:
            raise MessageNotFoundException(detail="Direct message not found")
        if message.recipient_id != user_id:
            raise PermissionDeniedException(detail="Only the recipient can mark a message as read")

        if message.read_at is None:
            message.read_at = func.now()
            await self.db.commit()

        return await self.get_direct_message(direct_message_id)

    @staticmethod
    def _to_direct_response(msg: DirectMessage) -> DirectMessageResponse:
        return DirectMessageResponse(
            id=msg.id,
            sender_id=msg.sender_id,
            sender_username=msg.sender.username,
            sender_display_name=msg.sender.display_name,
            recipient_id=msg.recipient_id,
            recipient_username=msg.recipient.username,
            recipient_display_name=msg.recipient.display_name,
            content=msg.content,
            message_type=msg.message_type,
            read_at=msg.read_at,
            created_at=msg.created_at,
        )
