from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from chathub.utils.websocket_manager import WebsocketManager, websocket_manager

from chathub.database.postgres import async_session, get_db_session
from chathub.database.redis import RedisManager, redis_manager
from chathub.services.chat_service import ChatService
from chathub.services.notification_service import NotificationService
from chathub.services.presence_service import PresenceService
from chathub.services.reaction_service import ReactionService
from chathub.services.read_receipt_service import ReadReceiptService
from chathub.services.room_service import RoomService

def get_websocket_manager() -> WebsocketManager:
    """
    Dependency that provides the singleton WebsocketManager instance.
    """
    return websocket_manager

def get_rate_limiter() -> RedisManager:
    """
    Dependency that provides the shared expiring key/value store used for
    rate limits and throttles.
    """
    return redis_manager

def get_session_factory():
    """
    Dependency that provides the session factory. WebSocket sessions open
    one database session per event instead of holding one for the whole
    connection.
    """
    return async_session

def get_room_service(db: AsyncSession = Depends(get_db_session)) -> RoomService:
    return RoomService(db)

def get_presence_service(db: AsyncSession = Depends(get_db_session)) -> PresenceService:
    return PresenceService(db)

def get_chat_service(db: AsyncSession = Depends(get_db_session)) -> ChatService:
    return ChatService(db)

def get_reaction_service(db: AsyncSession = Depends(get_db_session)) -> ReactionService:
    return ReactionService(db)

def get_read_receipt_service(db: AsyncSession = Depends(get_db_session)) -> ReadReceiptService:
    return ReadReceiptService(db)

def get_notification_service(
    ws_manager: WebsocketManager = Depends(get_websocket_manager),
) -> NotificationService:
    """
    Dependency that provides realtime fan-out for HTTP routes.
    """
    return NotificationService(ws_manager)
