import json

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from chathub.models.message import Message
from chathub.models.presence import Presence
from chathub.models.reaction import MessageReaction
from chathub.schemas.presence import PresenceStatus
from chathub.services.chat_service import ChatService
from chathub.services.presence_service import PresenceService
from chathub.services.session_coordinator import ChatSession, SessionState
from conftest import create_room, create_user, token_for

async def open_session(broadcaster, session_factory, throttle=None, user=None):
    connection_id = await broadcaster.connect()
    session = ChatSession(connection_id, broadcaster, session_factory, throttle=throttle)
    if user is not None:
        await session.handle_raw(json.dumps({"type": "authenticate", "token": token_for(user)}))
        assert session.state is SessionState.AUTHENTICATED
    return session

async def send(session, **frame):
    await session.handle_raw(json.dumps(frame))

def last(broadcaster, session, event_type):
    events = broadcaster.events(session.connection_id, event_type)
    assert events, f"no {event_type} event"
    return events[-1]["data"]

@pytest.mark.asyncio
async def test_events_require_authentication(broadcaster, session_factory):
    session = await open_session(broadcaster, session_factory)
    await send(session, type="join_room", room_id=1)

    error = last(broadcaster, session, "error")
    assert error["code"] == "unauthenticated"
    assert error["event"] == "join_room"
    assert error["room_id"] == 1

@pytest.mark.asyncio
async def test_authenticate_with_bad_token(broadcaster, session_factory):
    session = await open_session(broadcaster, session_factory)
    await session.authenticate("not-a-token")

    assert session.state is SessionState.UNAUTHENTICATED
    assert last(broadcaster, session, "error")["code"] == "unauthenticated"

@pytest.mark.asyncio
async def test_second_authenticate_conflicts(broadcaster, session_factory, test_user):
    session = await open_session(broadcaster, session_factory, user=test_user)
    await send(session, type="authenticate", token=token_for(test_user))

    assert last(broadcaster, session, "authenticated")["user_id"] == test_user.id
    assert last(broadcaster, session, "error")["code"] == "conflict"

@pytest.mark.asyncio
async def test_malformed_frames(broadcaster, session_factory, test_user):
    session = await open_session(broadcaster, session_factory, user=test_user)

    await session.handle_raw("{not json")
    await send(session, type="teleport")
    await send(session, type="send_room_message", room_id=1, content="")

    errors = broadcaster.events(session.connection_id, "error")
    assert [e["data"]["code"] for e in errors] == ["validation_error"] * 3
    assert errors[2]["data"]["event"] == "send_room_message"

@pytest.mark.asyncio
async def test_room_message_reaches_everyone_including_sender(broadcaster, session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)
    alice = await open_session(broadcaster, session_factory, user=test_user)
    bob = await open_session(broadcaster, session_factory, user=other_user)

    # The creator's presence is restored on authenticate.
    assert room.id in alice.joined_rooms

    await send(bob, type="join_room", room_id=room.id)
    assert last(broadcaster, bob, "room_joined")["room_id"] == room.id
    assert last(broadcaster, alice, "user_joined")["user_id"] == other_user.id
    assert broadcaster.events(bob.connection_id, "user_joined") == []

    await send(alice, type="send_room_message", room_id=room.id, content="welcome!")

    for session in (alice, bob):
        message = last(broadcaster, session, "receive_room_message")
        assert message["content"] == "welcome!"
        assert message["sender_id"] == test_user.id

@pytest.mark.asyncio
async def test_errors_go_to_originator_only(broadcaster, session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)
    alice = await open_session(broadcaster, session_factory, user=test_user)
    bob = await open_session(broadcaster, session_factory, user=other_user)

    await send(bob, type="send_room_message", room_id=room.id, content="let me in")

    assert last(broadcaster, bob, "error")["code"] == "permission_denied"
    assert broadcaster.events(alice.connection_id, "error") == []
    assert broadcaster.events(alice.connection_id, "receive_room_message") == []

@pytest.mark.asyncio
async def test_join_full_room(broadcaster, session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user, max_users=2)
    third = await create_user(session_factory, "third")
    bob = await open_session(broadcaster, session_factory, user=other_user)
    carol = await open_session(broadcaster, session_factory, user=third)

    await send(bob, type="join_room", room_id=room.id)
    await send(carol, type="join_room", room_id=room.id)

    error = last(broadcaster, carol, "error")
    assert error["code"] == "capacity_exceeded"
    assert error["room_id"] == room.id
    assert room.id not in carol.joined_rooms

@pytest.mark.asyncio
async def test_leave_room(broadcaster, session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)
    alice = await open_session(broadcaster, session_factory, user=test_user)
    bob = await open_session(broadcaster, session_factory, user=other_user)

    await send(bob, type="leave_room", room_id=room.id)
    assert last(broadcaster, bob, "error")["code"] == "permission_denied"

    await send(bob, type="join_room", room_id=room.id)
    await send(bob, type="leave_room", room_id=room.id)

    assert last(broadcaster, bob, "room_left")["room_id"] == room.id
    assert last(broadcaster, alice, "user_left")["user_id"] == other_user.id
    assert room.id not in bob.joined_rooms

@pytest.mark.asyncio
async def test_direct_message_to_offline_user_is_kept(broadcaster, session_factory, test_user, other_user):
    alice = await open_session(broadcaster, session_factory, user=test_user)

    await send(alice, type="send_direct_message", recipient_id=other_user.id, content="ping")
    ack = last(broadcaster, alice, "direct_message_sent")
    assert ack["delivered"] is False

    bob = await open_session(broadcaster, session_factory, user=other_user)
    await send(alice, type="send_direct_message", recipient_id=other_user.id, content="pong?")

    received = last(broadcaster, bob, "receive_direct_message")
    assert received["content"] == "pong?"
    assert received["sender_id"] == test_user.id

    async with session_factory() as db:
        history = await ChatService(db).get_direct_messages(other_user.id, test_user.id)
    assert [m.content for m in history] == ["ping", "pong?"]

    await send(bob, type="mark_direct_as_read", direct_message_id=ack["id"])
    read = last(broadcaster, alice, "direct_message_read")
    assert read["direct_message_id"] == ack["id"]
    assert read["reader_id"] == other_user.id

@pytest.mark.asyncio
async def test_typing_is_throttled(broadcaster, session_factory, throttle, test_user, other_user):
    room = await create_room(session_factory, test_user)
    alice = await open_session(broadcaster, session_factory, throttle=throttle, user=test_user)
    bob = await open_session(broadcaster, session_factory, throttle=throttle, user=other_user)
    await send(bob, type="join_room", room_id=room.id)

    await send(alice, type="typing", room_id=room.id, is_typing=True)
    await send(alice, type="typing", room_id=room.id, is_typing=True)
    await send(alice, type="typing", room_id=room.id, is_typing=False)
    await send(alice, type="typing", room_id=room.id, is_typing=True)

    typing = [e["data"]["is_typing"] for e in broadcaster.events(bob.connection_id, "user_typing")]
    assert typing == [True, False, True]
    assert broadcaster.events(alice.connection_id, "user_typing") == []

    await send(bob, type="typing_dm", recipient_id=test_user.id, is_typing=True)
    assert last(broadcaster, alice, "user_typing_dm")["user_id"] == other_user.id

@pytest.mark.asyncio
async def test_reactions_and_reads_are_broadcast(broadcaster, session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)
    alice = await open_session(broadcaster, session_factory, user=test_user)
    bob = await open_session(broadcaster, session_factory, user=other_user)
    await send(bob, type="join_room", room_id=room.id)
    await send(alice, type="send_room_message", room_id=room.id, content="vote")
    message_id = last(broadcaster, alice, "receive_room_message")["id"]

    await send(bob, type="add_reaction", message_id=message_id, emoji="👍")
    await send(bob, type="add_reaction", message_id=message_id, emoji="👍")
    added = last(broadcaster, alice, "reaction_added")
    assert added["reactions"] == [
        {"emoji": "👍", "count": 1, "users": [other_user.display_name], "user_ids": [other_user.id]}
    ]

    await send(bob, type="remove_reaction", message_id=message_id, emoji="👍")
    assert last(broadcaster, alice, "reaction_removed")["reactions"] == []

    await send(bob, type="mark_as_read", message_id=message_id)
    read = last(broadcaster, alice, "message_read")
    assert read["message_id"] == message_id
    assert read["user_id"] == other_user.id

    await send(bob, type="add_reaction", message_id=99999, emoji="👍")
    error = last(broadcaster, bob, "error")
    assert error["code"] == "not_found"
    assert error["message_id"] == 99999

@pytest.mark.asyncio
async def test_change_status(broadcaster, session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)
    alice = await open_session(broadcaster, session_factory, user=test_user)
    bob = await open_session(broadcaster, session_factory, user=other_user)
    await send(bob, type="join_room", room_id=room.id)

    await send(alice, type="change_status", status="busy")
    assert last(broadcaster, alice, "status_changed") == {"status": "busy", "rooms": [room.id]}
    change = last(broadcaster, bob, "user_status_change")
    assert change["status"] == "busy"
    assert change["room_id"] == room.id

    await send(alice, type="change_status", status="offline")
    assert last(broadcaster, alice, "error")["code"] == "validation_error"

@pytest.mark.asyncio
async def test_call_signals_are_relayed(broadcaster, session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)
    alice = await open_session(broadcaster, session_factory, user=test_user)
    bob = await open_session(broadcaster, session_factory, user=other_user)
    await send(bob, type="join_room", room_id=room.id)

    await send(alice, type="call_user", room_id=room.id, signal={"sdp": "offer"}, video=True)
    await send(bob, type="accept_call", room_id=room.id, signal={"sdp": "answer"})
    await send(alice, type="end_call", room_id=room.id)

    assert last(broadcaster, bob, "call_user")["signal"] == {"sdp": "offer"}
    assert last(broadcaster, bob, "call_user")["video"] is True
    assert last(broadcaster, alice, "call_accepted")["signal"] == {"sdp": "answer"}
    assert last(broadcaster, bob, "call_ended")["user_id"] == test_user.id

@pytest.mark.asyncio
async def test_disconnect_marks_user_offline(broadcaster, session_factory, test_user, other_user):
    first = await create_room(session_factory, test_user, name="One")
    second = await create_room(session_factory, test_user, name="Two")
    alice = await open_session(broadcaster, session_factory, user=test_user)
    bob = await open_session(broadcaster, session_factory, user=other_user)
    await send(bob, type="join_room", room_id=first.id)
    await send(bob, type="join_room", room_id=second.id)
    await send(bob, type="send_room_message", room_id=first.id, content="still here?")
    message_id = last(broadcaster, bob, "receive_room_message")["id"]
    await send(bob, type="add_reaction", message_id=message_id, emoji="👋")
    assert last(broadcaster, alice, "reaction_added")["message_id"] == message_id

    await bob.close()
    await bob.close()

    assert bob.state is SessionState.CLOSED
    offline = broadcaster.events(alice.connection_id, "user_offline")
    assert sorted(e["data"]["room_id"] for e in offline) == [first.id, second.id]

    async with session_factory() as db:
        result = await db.execute(select(Presence.status).filter(Presence.user_id == other_user.id))
        assert set(result.scalars().all()) == {PresenceStatus.OFFLINE}
        messages = await db.execute(select(func.count(Message.id)).filter(Message.sender_id == other_user.id))
        assert messages.scalar_one() == 1
        reactions = await db.execute(
            select(func.count(MessageReaction.id)).filter(MessageReaction.message_id == message_id)
        )
        assert reactions.scalar_one() == 1

@pytest.mark.asyncio
async def test_close_before_authentication(broadcaster, session_factory):
    session = await open_session(broadcaster, session_factory)
    await session.close()

    assert session.state is SessionState.CLOSED
    await send(session, type="authenticate", token="whatever")
    assert broadcaster.events(session.connection_id) == []

@pytest.mark.asyncio
async def test_reconnect_restores_presence(broadcaster, session_factory, test_user, other_user):
    room = await create_room(session_factory, test_user)
    bob = await open_session(broadcaster, session_factory, user=other_user)
    await send(bob, type="join_room", room_id=room.id)
    await bob.close()

    alice = await open_session(broadcaster, session_factory, user=test_user)
    bob_again = await open_session(broadcaster, session_factory, user=other_user)

    assert last(broadcaster, bob_again, "authenticated")["rooms"] == [room.id]
    assert last(broadcaster, alice, "user_online")["user_id"] == other_user.id

@pytest.mark.asyncio
async def test_authenticate_can_be_retried_after_store_failure(broadcaster, session_factory, test_user, monkeypatch):
    room = await create_room(session_factory, test_user)
    restore_online = PresenceService.restore_online
    failures = []

    async def restore_once_failing(self, user_id):
        if not failures:
            failures.append(user_id)
            raise OperationalError("UPDATE user_presences", {}, Exception("database is locked"))
        return await restore_online(self, user_id)

    monkeypatch.setattr(PresenceService, "restore_online", restore_once_failing)
    session = await open_session(broadcaster, session_factory)
    token = token_for(test_user)

    await send(session, type="authenticate", token=token)
    assert last(broadcaster, session, "error")["code"] == "internal"
    assert session.state is SessionState.UNAUTHENTICATED
    assert session.user_id is None
    assert broadcaster.events(session.connection_id, "authenticated") == []

    await send(session, type="authenticate", token=token)
    ack = last(broadcaster, session, "authenticated")
    assert session.state is SessionState.AUTHENTICATED
    assert ack["user_id"] == test_user.id
    assert ack["rooms"] == [room.id]
    assert len(broadcaster.events(session.connection_id, "error")) == 1
