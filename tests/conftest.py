import json
from collections import defaultdict

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from chathub.core.security import create_access_token, hash_password
from chathub.models import direct_message, message, presence, reaction, read_receipt, room  # noqa: F401
from chathub.models.base import Base
from chathub.models.user import User
from chathub.schemas.room import CreateRoomRequest, RoomKind
from chathub.services.room_service import RoomService


class InMemoryBroadcaster:
    """
    Stands in for WebsocketManager: same interface, delivery is immediate and
    every event lands in a per-connection inbox.
    """

    def __init__(self):
        self.inboxes = {}
        self.rooms = defaultdict(set)
        self.users = defaultdict(set)
        self.connection_users = {}
        self._counter = 0

    async def connect(self, websocket=None) -> str:
        self._counter += 1
        connection_id = f"conn-{self._counter}"
        self.inboxes[connection_id] = []
        return connection_id

    async def bind_user(self, connection_id, user_id):
        self.connection_users[connection_id] = user_id
        self.users[user_id].add(connection_id)

    async def join_room(self, connection_id, room_id):
        self.rooms[room_id].add(connection_id)

    async def leave_room(self, connection_id, room_id):
        self.rooms[room_id].discard(connection_id)

    async def disconnect(self, connection_id):
        for connections in self.rooms.values():
            connections.discard(connection_id)
        user_id = self.connection_users.pop(connection_id, None)
        if user_id is not None:
            self.users[user_id].discard(connection_id)

    def _deliver(self, connection_id, event):
        if connection_id in self.inboxes:
            # Same wire encoding as the real manager.
            self.inboxes[connection_id].append(json.loads(json.dumps(event)))

    async def broadcast_to_room(self, room_id, event, exclude=None):
        for connection_id in list(self.rooms[room_id]):
            if connection_id != exclude:
                self._deliver(connection_id, event)

    async def send_to_user(self, user_id, event):
        for connection_id in list(self.users[user_id]):
            self._deliver(connection_id, event)

    async def send_to_connection(self, connection_id, event):
        self._deliver(connection_id, event)

    async def is_user_connected(self, user_id) -> bool:
        return bool(self.users[user_id])

    def events(self, connection_id, event_type=None):
        return [
            e for e in self.inboxes[connection_id]
            if event_type is None or e["type"] == event_type
        ]


class InMemoryThrottle:
    """Stands in for RedisManager's expiring keys; nothing expires on its own."""

    def __init__(self):
        self.claimed = set()
        self.counts = defaultdict(int)

    async def claim(self, key, ttl_seconds) -> bool:
        if key in self.claimed:
            return False
        self.claimed.add(key)
        return True

    async def release(self, key):
        self.claimed.discard(key)

    async def hit(self, key, window_seconds) -> int:
        self.counts[key] += 1
        return self.counts[key]


@pytest.fixture
async def db_engine(tmp_path):
    # File database so concurrent sessions really use separate connections.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'chathub.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        # Serialize writers the way row locks do on PostgreSQL.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, expire_on_commit=False, class_=AsyncSession)

@pytest.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session

@pytest.fixture
async def test_db(async_session):
    return async_session

async def create_user(session_factory, username, display_name=None, password="password123"):
    async with session_factory() as session:
        user = User(
            username=username,
            display_name=display_name or username.title(),
            email=f"{username}@example.com",
            hashed_password=hash_password(password),
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user

async def create_room(session_factory, creator, max_users=10, name="General", kind=RoomKind.TOPIC):
    async with session_factory() as session:
        return await RoomService(session).create_room(
            creator.id,
            CreateRoomRequest(name=name, kind=kind, category="music", max_users=max_users),
        )

def token_for(user):
    return create_access_token({"user_id": user.id, "username": user.username})

@pytest.fixture
async def test_user(session_factory):
    return await create_user(session_factory, "testuser", "Test User")

@pytest.fixture
async def other_user(session_factory):
    return await create_user(session_factory, "otheruser", "Other User")

@pytest.fixture
def test_token(test_user):
    return token_for(test_user)

@pytest.fixture
def auth_headers(test_token):
    return {"Authorization": f"Bearer {test_token}"}

@pytest.fixture
def broadcaster():
    return InMemoryBroadcaster()

@pytest.fixture
def throttle():
    return InMemoryThrottle()

@pytest.fixture
async def async_test_client(session_factory, broadcaster, throttle):
    from chathub.main import app
    from chathub.database.postgres import get_db_session
    from chathub.dependencies.service_dependencies import (
        get_rate_limiter,
        get_session_factory,
        get_websocket_manager,
    )

    async def _override_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = _override_db_session
    app.dependency_overrides[get_websocket_manager] = lambda: broadcaster
    app.dependency_overrides[get_rate_limiter] = lambda: throttle
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
