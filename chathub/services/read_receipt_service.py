from typing import Dict, List, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from chathub.core.exceptions import MessageNotFoundException
from chathub.database.postgres import upsert_insert
from ..models.message import Message
from ..models.read_receipt import ReadReceipt
from ..schemas.message import ReadReceiptResponse

class ReadReceiptService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def mark_read(self, message_id: int, user_id: int) -> Tuple[int, ReadReceiptResponse]:
        """
        Record that a user has read a message. Marking again refreshes read_at.

        Returns:
            (room_id of the message, the receipt)
        """
        result = await self.db.execute(select(Message.room_id).filter(Message.id == message_id))
        room_id = result.scalar_one_or_none()
        if room_id is None:
            raise MessageNotFoundException()

        stmt = upsert_insert(self.db, ReadReceipt).values(
            message_id=message_id,
            user_id=user_id,
            read_at=func.now(),
        )
        await self.db.execute(
            stmt.on_conflict_do_update(
                index_elements=["message_id", "user_id"],
                set_={"read_at": func.now()},
            )
        )
        await self.db.commit()

        receipt = await self.db.execute(
            select(ReadReceipt)
            .options(selectinload(ReadReceipt.user))
            .filter(ReadReceipt.message_id == message_id, ReadReceipt.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return room_id, self._to_response(receipt.scalar_one())

    async def receipts(self, message_id: int) -> List[ReadReceiptResponse]:
        """Lists who has read a message, earliest reader first."""
        exists = await self.db.execute(select(Message.id).filter(Message.id == message_id))
        if exists.scalar_one_or_none() is None:
            raise MessageNotFoundException()

        result = await self.db.execute(
            select(ReadReceipt)
            .options(selectinload(ReadReceipt.user))
            .filter(ReadReceipt.message_id == message_id)
            .order_by(ReadReceipt.read_at, ReadReceipt.id)
        )
        return [self._to_response(receipt) for receipt in result.scalars().all()]

    async def read_counts(self, message_ids: List[int]) -> Dict[int, int]:
        if not message_ids:
            return {}
        result = await self.db.execute(
            select(ReadReceipt.message_id, func.count(ReadReceipt.id))
            .filter(ReadReceipt.message_id.in_(message_ids))
            .group_by(ReadReceipt.message_id)
        )
        return {message_id: count for message_id, count in result.all()}

    @staticmethod
    def _to_response(receipt: ReadReceipt) -> ReadReceiptResponse:
        return ReadReceiptResponse(
            message_id=receipt.message_id,
            user_id=receipt.user_id,
            display_name=receipt.user.display_name,
            read_at=receipt.read_at,
        )
