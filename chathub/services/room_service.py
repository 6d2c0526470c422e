from collections import defaultdict
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from chathub.core.config import settings
from chathub.database.postgres import upsert_insert
from ..models.message import Message
from ..models.presence import Presence
from ..models.room import ChatRoom
from ..schemas.presence import PresenceStatus
from ..schemas.room import CreateRoomRequest, RoomKind, RoomMemberResponse, RoomResponse
from ..core.exceptions import (
    InternalServerErrorException,
    RoomFullException,
    RoomNotFoundException,
    ValidationException,
)

class RoomService:
    """
    Room registry: room metadata and admission control.

    `chat_rooms.live_count` mirrors the number of non-offline presence rows
    of a room. It only moves through `claim_slot` / `release_slots`, which
    are single conditional UPDATE statements, so two sessions racing for
    the last seat cannot both win.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_room(
        self,
        user_id: int,
        request: CreateRoomRequest,
    ) -> RoomResponse:
        """
        Create a new room. The creator becomes its first live participant.

        Args:
            user_id: ID of the creator
            request: Room creation request

        Returns:
            RoomResponse with created room details

        Raises:
            ValidationException: If the capacity is outside the configured bounds
            InternalServerErrorException: If room creation fails
        """
        if not settings.room_min_capacity <= request.max_users <= settings.room_max_capacity:
            raise ValidationException(
                detail=f"max_users must be between {settings.room_min_capacity} "
                       f"and {settings.room_max_capacity}"
            )

        room = ChatRoom(
            name=request.name,
            description=request.description,
            kind=request.kind,
            category=request.category,
            subcategory=request.subcategory,
            is_private=request.is_private,
            max_users=request.max_users,
            live_count=1,
            created_by=user_id,
        )
        self.db.add(room)
        try:
            await self.db.flush()
            self.db.add(Presence(user_id=user_id, room_id=room.id, status=PresenceStatus.ONLINE))
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            raise InternalServerErrorException(detail="Failed to create room") from e

        return await self.get_room_details(room.id)

    async def get_room(self, room_id: int) -> ChatRoom:
        room = await self.db.execute(
            select(ChatRoom)
            .filter(ChatRoom.id == room_id)
            .execution_options(populate_existing=True)
        )
        room = room.scalar_one_or_none()
        if not room:
            raise RoomNotFoundException()
        return room

    async def get_room_details(self, room_id: int) -> RoomResponse:
        room = await self.get_room(room_id)
        return (await self._to_responses([room]))[0]

    async def list_rooms(
        self,
        kind: Optional[RoomKind] = None,
        category: Optional[str] = None,
    ) -> List[RoomResponse]:
        """
        Lists rooms, most recently active first, optionally filtered by
        kind and category.
        """
        query = select(ChatRoom)
        if kind:
            query = query.filter(ChatRoom.kind == kind)
        if category:
            query = query.filter(ChatRoom.category == category)
        query = query.order_by(ChatRoom.updated_at.desc(), ChatRoom.id.desc())

        result = await self.db.execute(query)
        return await self._to_responses(result.scalars().all())

    async def _to_responses(self, rooms: List[ChatRoom]) -> List[RoomResponse]:
        if not rooms:
            return []
        room_ids = [room.id for room in rooms]

        presences = await self.db.execute(
            select(Presence)
            .options(selectinload(Presence.user))
            .filter(
                Presence.room_id.in_(room_ids),
                Presence.status != PresenceStatus.OFFLINE,
            )
            .order_by(Presence.last_seen.desc())
        )
        participants = defaultdict(list)
        for presence in presences.scalars().all():
            participants[presence.room_id].append(
                RoomMemberResponse(
                    user_id=presence.user.id,
                    username=presence.user.username,
                    display_name=presence.user.display_name,
                )
            )

        counts = await self.db.execute(
            select(Message.room_id, func.count(Message.id))
            .filter(Message.room_id.in_(room_ids))
            .group_by(Message.room_id)
        )
        message_counts = {room_id: count for room_id, count in counts.all()}

        return [
            RoomResponse(
                id=room.id,
                name=room.name,
                description=room.description,
                kind=room.kind,
                category=room.category,
                subcategory=room.subcategory,
                is_private=room.is_private,
                max_users=room.max_users,
                live_count=room.live_count,
                created_by=room.created_by,
                created_at=room.created_at,
                online_participants=participants.get(room.id, []),
                message_count=message_counts.get(room.id, 0),
            )
            for room in rooms
        ]

    async def claim_slot(self, room_id: int) -> bool:
        """Take one seat in the room if one is free. Returns False when full."""
        result = await self.db.execute(
            update(ChatRoom)
            .where(ChatRoom.id == room_id, ChatRoom.live_count < ChatRoom.max_users)
            .values(live_count=ChatRoom.live_count + 1)
            .returning(ChatRoom.id)
        )
        return result.scalar_one_or_none() is not None

    async def release_slots(self, room_ids: List[int]) -> None:
        """Give back one seat in each of the given rooms."""
        if not room_ids:
            return
        await self.db.execute(
            update(ChatRoom)
            .where(ChatRoom.id.in_(room_ids), ChatRoom.live_count > 0)
            .values(live_count=ChatRoom.live_count - 1)
        )

    async def admit(
        self,
        room_id: int,
        user_id: int,
        status: PresenceStatus = PresenceStatus.ONLINE,
    ) -> Presence:
        """
        Admit a user into a room, creating or reviving their presence row.

        A user who is already live in the room keeps their seat and only has
        status and last_seen refreshed. Everyone else must claim a free seat
        first.

        Raises:
            RoomNotFoundException: If the room doesn't exist
            RoomFullException: If every seat is taken
        """
        await self.get_room(room_id)

        refreshed = await self.db.execute(
            update(Presence)
            .where(
                Presence.user_id == user_id,
                Presence.room_id == room_id,
                Presence.status != PresenceStatus.OFFLINE,
            )
            .values(status=status, last_seen=func.now())
            .returning(Presence.id)
        )
        if refreshed.scalar_one_or_none() is None:
            if not await self.claim_slot(room_id):
                await self.db.rollback()
                raise RoomFullException()

            stmt = upsert_insert(self.db, Presence).values(
                user_id=user_id,
                room_id=room_id,
                status=status,
                last_seen=func.now(),
                joined_at=func.now(),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "room_id"],
                set_={"status": status, "last_seen": func.now()},
                where=Presence.status == PresenceStatus.OFFLINE,
            ).returning(Presence.id)
            revived = await self.db.execute(stmt)
            if revived.scalar_one_or_none() is None:
                # Another session made this row live in the meantime.
                await self.release_slots([room_id])

        await self.db.commit()
        return await self.get_presence(user_id, room_id)

    async def get_presence(self, user_id: int, room_id: int) -> Optional[Presence]:
        result = await self.db.execute(
            select(Presence)
            .options(selectinload(Presence.user))
            .filter(Presence.user_id == user_id, Presence.room_id == room_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
