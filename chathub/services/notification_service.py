from typing import List

from ..schemas.events import server_event
from ..schemas.message import (
    DirectMessageResponse,
    MessageResponse,
    ReactionGroup,
    ReadReceiptResponse,
)
from ..utils.websocket_manager import WebsocketManager

class NotificationService:
    """
    Realtime fan-out of persisted changes. Shared by the HTTP routes and the
    WebSocket session, so both paths emit identical events.

    Callers publish only after their transaction has committed.
    """

    def __init__(self, manager: WebsocketManager):
        self.manager = manager

    async def room_message(self, message: MessageResponse):
        # The sender receives its own message too.
        await self.manager.broadcast_to_room(
            message.room_id,
            server_event("receive_room_message", message.model_dump(mode="json")),
        )

    async def direct_message(self, message: DirectMessageResponse) -> bool:
        """Delivers a DM to the recipient's personal channel if they are connected."""
        if not await self.manager.is_user_connected(message.recipient_id):
            return False
        await self.manager.send_to_user(
            message.recipient_id,
            server_event("receive_direct_message", message.model_dump(mode="json")),
        )
        return True

    async def direct_message_read(self, message: DirectMessageResponse):
        await self.manager.send_to_user(
            message.sender_id,
            server_event("direct_message_read", {
                "direct_message_id": message.id,
                "reader_id": message.recipient_id,
                "read_at": message.model_dump(mode="json")["read_at"],
            }),
        )

    async def reactions_changed(
        self,
        event_type: str,
        room_id: int,
        message_id: int,
        user_id: int,
        emoji: str,
        groups: List[ReactionGroup],
    ):
        await self.manager.broadcast_to_room(
            room_id,
            server_event(event_type, {
                "room_id": room_id,
                "message_id": message_id,
                "user_id": user_id,
                "emoji": emoji,
                "reactions": [group.model_dump(mode="json") for group in groups],
            }),
        )

    async def message_read(self, room_id: int, receipt: ReadReceiptResponse):
        await self.manager.broadcast_to_room(
            room_id,
            server_event("message_read", {"room_id": room_id, **receipt.model_dump(mode="json")}),
        )

    async def presence_changed(self, event_type: str, room_id: int, data: dict, exclude: str = None):
        """Announces a participant's presence change (join, leave, status, offline) to a room."""
        await self.manager.broadcast_to_room(
            room_id,
            server_event(event_type, {"room_id": room_id, **data}),
            exclude=exclude,
        )
