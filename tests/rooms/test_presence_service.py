import pytest

from chathub.core.exceptions import RoomNotFoundException, ValidationException
from chathub.schemas.presence import PresenceStatus
from chathub.services.presence_service import PresenceService
from conftest import create_room, create_user

@pytest.mark.asyncio
async def test_upsert_creates_then_updates_one_row(session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)

    async with session_factory() as session:
        service = PresenceService(session)
        first = await service.upsert(other_user.id, room.id, PresenceStatus.ONLINE)
        second = await service.upsert(other_user.id, room.id, PresenceStatus.AWAY)

    assert first.id == second.id
    assert second.status == PresenceStatus.AWAY
    assert second.last_seen >= first.last_seen

@pytest.mark.asyncio
async def test_upsert_unknown_room(session_factory, test_user):
    async with session_factory() as session:
        with pytest.raises(RoomNotFoundException):
            await PresenceService(session).upsert(test_user.id, 999, PresenceStatus.ONLINE)

@pytest.mark.asyncio
async def test_set_offline_everywhere(session_factory, test_user, other_user):
    first = await create_room(session_factory, test_user, name="One")
    second = await create_room(session_factory, test_user, name="Two")

    async with session_factory() as session:
        service = PresenceService(session)
        await service.upsert(other_user.id, first.id, PresenceStatus.ONLINE)
        await service.upsert(other_user.id, second.id, PresenceStatus.BUSY)

        left = await service.set_offline_everywhere(other_user.id)
        again = await service.set_offline_everywhere(other_user.id)
        held = await service.held_room_ids(other_user.id)
        online = await service.list_online(room_id=first.id)

    assert left == sorted([first.id, second.id])
    assert again == []
    assert held == []
    assert [p.user_id for p in online] == [test_user.id]

@pytest.mark.asyncio
async def test_change_status_only_touches_live_rooms(session_factory, test_user, other_user):
    live = await create_room(session_factory, test_user, name="Live")
    left = await create_room(session_factory, test_user, name="Left")

    async with session_factory() as session:
        service = PresenceService(session)
        await service.upsert(other_user.id, live.id, PresenceStatus.ONLINE)
        await service.upsert(other_user.id, left.id, PresenceStatus.ONLINE)
        await service.upsert(other_user.id, left.id, PresenceStatus.OFFLINE)

        changed = await service.change_status(other_user.id, PresenceStatus.BUSY)
        assert changed == [live.id]
        assert not await service.is_live(other_user.id, left.id)

        with pytest.raises(ValidationException):
            await service.change_status(other_user.id, PresenceStatus.OFFLINE)

@pytest.mark.asyncio
async def test_restore_online_skips_full_rooms(session_factory, test_user, other_user):
    open_room = await create_room(session_factory, test_user, name="Open", max_users=5)
    small_room = await create_room(session_factory, test_user, name="Small", max_users=2)
    latecomer = await create_user(session_factory, "latecomer")

    async with session_factory() as session:
        service = PresenceService(session)
        await service.upsert(other_user.id, open_room.id, PresenceStatus.ONLINE)
        await service.upsert(other_user.id, small_room.id, PresenceStatus.ONLINE)
        await service.set_offline_everywhere(other_user.id)
        # Seat taken while other_user was away.
        await service.upsert(latecomer.id, small_room.id, PresenceStatus.ONLINE)

        restored = await service.restore_online(other_user.id)

        assert restored == [open_room.id]
        assert await service.is_live(other_user.id, open_room.id)
        assert not await service.is_live(other_user.id, small_room.id)

@pytest.mark.asyncio
async def test_list_online_across_rooms_includes_room_name(session_factory, test_user):
    room = await create_room(session_factory, test_user, name="Lounge")

    async with session_factory() as session:
        online = await PresenceService(session).list_online()

    assert len(online) == 1
    assert online[0].room_name == "Lounge"
    assert online[0].status == PresenceStatus.ONLINE
