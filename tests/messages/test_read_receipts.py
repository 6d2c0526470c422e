import pytest

from chathub.core.exceptions import MessageNotFoundException
from chathub.schemas.message import MessageCreateRequest
from chathub.services.chat_service import ChatService
from chathub.services.read_receipt_service import ReadReceiptService
from conftest import create_room

@pytest.mark.asyncio
async def test_mark_read_round_trip(session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)
    async with session_factory() as session:
        message = await ChatService(session).send_room_message(
            test_user.id, room.id, MessageCreateRequest(content="did you see this?")
        )

    async with session_factory() as session:
        service = ReadReceiptService(session)
        room_id, receipt = await service.mark_read(message.id, other_user.id)
        _, again = await service.mark_read(message.id, other_user.id)
        receipts = await service.receipts(message.id)
        history = await ChatService(session).get_room_messages(room.id)

    assert room_id == room.id
    assert receipt.display_name == other_user.display_name
    assert again.read_at >= receipt.read_at
    assert [(r.message_id, r.user_id) for r in receipts] == [(message.id, other_user.id)]
    assert history[0].read_count == 1

@pytest.mark.asyncio
async def test_mark_read_unknown_message(test_db, test_user):
    with pytest.raises(MessageNotFoundException):
        await ReadReceiptService(test_db).mark_read(999, test_user.id)
    with pytest.raises(MessageNotFoundException):
        await ReadReceiptService(test_db).receipts(999)
