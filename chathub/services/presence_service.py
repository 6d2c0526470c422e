from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from chathub.core.exceptions import RoomFullException, ValidationException
from chathub.core.log_config import logger
from chathub.database.postgres import upsert_insert
from ..models.presence import Presence
from ..schemas.presence import PresenceResponse, PresenceStatus
from .room_service import RoomService

LIVE_STATUSES = (PresenceStatus.ONLINE, PresenceStatus.AWAY, PresenceStatus.BUSY)

class PresenceService:
    """
    Presence store: one row per (user, room) ever joined, carrying status and
    last_seen. Membership is implied by the row, so every write is an upsert.
    """

    def __init__(self, db: AsyncSession, room_service: RoomService = None):
        self.db = db
        self.room_service = room_service or RoomService(db)

    async def upsert(self, user_id: int, room_id: int, status: PresenceStatus) -> Presence:
        """
        Set a user's status in one room, creating the row if needed.

        Going live runs through room admission; going offline frees the seat.
        """
        if status in LIVE_STATUSES:
            return await self.room_service.admit(room_id, user_id, status)

        await self.room_service.get_room(room_id)
        left = await self.db.execute(
            update(Presence)
            .where(
                Presence.user_id == user_id,
                Presence.room_id == room_id,
                Presence.status != PresenceStatus.OFFLINE,
            )
            .values(status=PresenceStatus.OFFLINE, last_seen=func.now())
            .returning(Presence.room_id)
        )
        if left.scalar_one_or_none() is not None:
            await self.room_service.release_slots([room_id])
        else:
            stmt = upsert_insert(self.db, Presence).values(
                user_id=user_id,
                room_id=room_id,
                status=PresenceStatus.OFFLINE,
                last_seen=func.now(),
                joined_at=func.now(),
            )
            await self.db.execute(
                stmt.on_conflict_do_update(
                    index_elements=["user_id", "room_id"],
                    set_={"last_seen": func.now()},
                )
            )
        await self.db.commit()
        return await self.room_service.get_presence(user_id, room_id)

    async def set_offline_everywhere(self, user_id: int) -> List[int]:
        """
        Mark every live presence of the user offline in one statement.
        Safe to repeat. Returns the rooms the user was live in.
        """
        result = await self.db.execute(
            update(Presence)
            .where(Presence.user_id == user_id, Presence.status != PresenceStatus.OFFLINE)
            .values(status=PresenceStatus.OFFLINE, last_seen=func.now())
            .returning(Presence.room_id)
        )
        room_ids = sorted(result.scalars().all())
        await self.room_service.release_slots(room_ids)
        await self.db.commit()
        return room_ids

    async def change_status(self, user_id: int, status: PresenceStatus) -> List[int]:
        """
        Apply a status to every room the user currently holds.
        Returns the affected rooms.
        """
        if status not in LIVE_STATUSES:
            raise ValidationException(detail="Invalid status")

        result = await self.db.execute(
            update(Presence)
            .where(Presence.user_id == user_id, Presence.status != PresenceStatus.OFFLINE)
            .values(status=status, last_seen=func.now())
            .returning(Presence.room_id)
        )
        room_ids = sorted(result.scalars().all())
        await self.db.commit()
        return room_ids

    async def restore_online(self, user_id: int) -> List[int]:
        """
        Mark all of a user's presence rows online when they connect.

        Rows that were offline go back through admission; rooms that filled
        up in the meantime are skipped. Returns the rooms the user is now
        online in.
        """
        live = await self.change_status(user_id, PresenceStatus.ONLINE)

        offline = await self.db.execute(
            select(Presence.room_id)
            .filter(Presence.user_id == user_id, Presence.status == PresenceStatus.OFFLINE)
            .order_by(Presence.room_id)
        )
        restored = list(live)
        for room_id in offline.scalars().all():
            try:
                await self.room_service.admit(room_id, user_id, PresenceStatus.ONLINE)
            except RoomFullException:
                logger.info(f"Room {room_id} is full, user {user_id} stays offline there")
                continue
            restored.append(room_id)
        return sorted(restored)

    async def is_live(self, user_id: int, room_id: int) -> bool:
        result = await self.db.execute(
            select(Presence.status).filter(
                Presence.user_id == user_id,
                Presence.room_id == room_id,
            )
        )
        status = result.scalar_one_or_none()
        return status is not None and status != PresenceStatus.OFFLINE

    async def held_room_ids(self, user_id: int) -> List[int]:
        """Rooms in which the user currently has a live presence."""
        result = await self.db.execute(
            select(Presence.room_id)
            .filter(Presence.user_id == user_id, Presence.status != PresenceStatus.OFFLINE)
            .order_by(Presence.room_id)
        )
        return list(result.scalars().all())

    async def list_online(self, room_id: Optional[int] = None) -> List[PresenceResponse]:
        """
        Lists live presences joined with their users, most recently seen first.
        Without a room filter the room name is included.
        """
        query = (
            select(Presence)
            .options(selectinload(Presence.user), selectinload(Presence.room))
            .filter(Presence.status != PresenceStatus.OFFLINE)
        )
        if room_id is not None:
            query = query.filter(Presence.room_id == room_id)
        query = query.order_by(Presence.last_seen.desc(), Presence.id.desc())

        result = await self.db.execute(query)
        return [
            PresenceResponse(
                user_id=presence.user_id,
                username=presence.user.username,
                display_name=presence.user.display_name,
                room_id=presence.room_id,
                room_name=presence.room.name if room_id is None else None,
                status=presence.status,
                last_seen=presence.last_seen,
            )
            for presence in result.scalars().all()
        ]
