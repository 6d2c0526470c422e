from typing import Dict, List, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from chathub.core.exceptions import MessageNotFoundException, ValidationException
from chathub.database.postgres import upsert_insert
from ..models.message import Message
from ..models.reaction import MessageReaction
from ..schemas.message import ReactionGroup

MAX_EMOJI_LENGTH = 32

class ReactionService:
    """
    Per-message emoji reactions. A (message, user, emoji) triple exists at
    most once; clients only ever see the grouped view.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _message_room_id(self, message_id: int) -> int:
        result = await self.db.execute(select(Message.room_id).filter(Message.id == message_id))
        room_id = result.scalar_one_or_none()
        if room_id is None:
            raise MessageNotFoundException()
        return room_id

    def _check_emoji(self, emoji: str) -> str:
        emoji = (emoji or "").strip()
        if not emoji or len(emoji) > MAX_EMOJI_LENGTH:
            raise ValidationException(detail="Invalid emoji")
        return emoji

    async def add(self, message_id: int, user_id: int, emoji: str) -> Tuple[int, List[ReactionGroup]]:
        """
        Add a reaction. Adding the same triple twice is a no-op.

        Returns:
            (room_id of the message, updated grouped view)
        """
        emoji = self._check_emoji(emoji)
        room_id = await self._message_room_id(message_id)

        stmt = upsert_insert(self.db, MessageReaction).values(
            message_id=message_id,
            user_id=user_id,
            emoji=emoji,
        )
        await self.db.execute(
            stmt.on_conflict_do_nothing(index_elements=["message_id", "user_id", "emoji"])
        )
        await self.db.commit()
        return room_id, await self.grouped_view(message_id)

    async def remove(self, message_id: int, user_id: int, emoji: str) -> Tuple[int, List[ReactionGroup]]:
        """
        Remove a reaction. Removing a triple that doesn't exist is a no-op.

        Returns:
            (room_id of the message, updated grouped view)
        """
        emoji = self._check_emoji(emoji)
        room_id = await self._message_room_id(message_id)

        await self.db.execute(
            delete(MessageReaction).where(
                MessageReaction.message_id == message_id,
                MessageReaction.user_id == user_id,
                MessageReaction.emoji == emoji,
            )
        )
        await self.db.commit()
        return room_id, await self.grouped_view(message_id)

    async def grouped_view(self, message_id: int) -> List[ReactionGroup]:
        return (await self.grouped_views([message_id]))[message_id]

    async def list_for_message(self, message_id: int) -> List[ReactionGroup]:
        await self._message_room_id(message_id)
        return await self.grouped_view(message_id)

    async def grouped_views(self, message_ids: List[int]) -> Dict[int, List[ReactionGroup]]:
        """
        Group reactions by emoji for each message. Emoji appear in the order
        their first reaction was added.
        """
        views: Dict[int, Dict[str, ReactionGroup]] = {message_id: {} for message_id in message_ids}
        if not message_ids:
            return {}

        result = await self.db.execute(
            select(MessageReaction)
            .options(selectinload(MessageReaction.user))
            .filter(MessageReaction.message_id.in_(message_ids))
            .order_by(MessageReaction.id)
        )
        for reaction in result.scalars().all():
            groups = views[reaction.message_id]
            group = groups.get(reaction.emoji)
            if group is None:
                group = groups[reaction.emoji] = ReactionGroup(
                    emoji=reaction.emoji, count=0, users=[], user_ids=[]
                )
            group.count += 1
            group.users.append(reaction.user.display_name)
            group.user_ids.append(reaction.user_id)

        return {message_id: list(groups.values()) for message_id, groups in views.items()}
