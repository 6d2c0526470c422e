import json
from contextlib import asynccontextmanager
from enum import Enum
from typing import Optional, Set

from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from chathub.core.config import settings
from chathub.core.exceptions import (
    BaseAPIException,
    ConflictException,
    InternalServerErrorException,
    PermissionDeniedException,
    UnauthenticatedException,
    ValidationException,
)
from chathub.core.log_config import logger
from ..schemas.events import (
    CORRELATION_FIELDS,
    AuthenticateEvent,
    client_event_adapter,
    server_event,
)
from ..schemas.message import DirectMessageCreateRequest, MessageCreateRequest
from ..schemas.presence import PresenceStatus
from .auth_service import AuthService
from .chat_service import ChatService
from .notification_service import NotificationService
from .presence_service import PresenceService
from .reaction_service import ReactionService
from .read_receipt_service import ReadReceiptService


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ChatSession:
    """
    Realtime state of one WebSocket connection.

    Holds the bound user and the rooms this connection is subscribed to,
    validates every inbound frame into a typed event and dispatches it to
    its handler. Each handler runs in its own database unit of work and
    publishes only after that work has committed. Failures are reported
    as `error` events to this connection alone.
    """

    def __init__(self, connection_id: str, manager, session_factory, throttle=None):
        self.connection_id = connection_id
        self.manager = manager
        self.notifier = NotificationService(manager)
        self.session_factory = session_factory
        self.throttle = throttle

        self.state = SessionState.UNAUTHENTICATED
        self.user_id: Optional[int] = None
        self.username: Optional[str] = None
        self.display_name: Optional[str] = None
        self.joined_rooms: Set[int] = set()

        self._handlers = {
            "authenticate": self._authenticate,
            "join_room": self._join_room,
            "leave_room": self._leave_room,
            "send_room_message": self._send_room_message,
            "send_direct_message": self._send_direct_message,
            "typing": self._typing,
            "typing_dm": self._typing_dm,
            "add_reaction": self._add_reaction,
            "remove_reaction": self._remove_reaction,
            "mark_as_read": self._mark_as_read,
            "mark_direct_as_read": self._mark_direct_as_read,
            "change_status": self._change_status,
            "call_user": self._call_user,
            "accept_call": self._accept_call,
            "end_call": self._end_call,
        }

    @asynccontextmanager
    async def _unit_of_work(self):
        async with self.session_factory() as db:
            try:
                yield db
                await db.commit()
            except Exception:
                await db.rollback()
                raise

    @property
    def _identity(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "display_name": self.display_name,
        }

    async def _send(self, event_type: str, data: dict):
        await self.manager.send_to_connection(self.connection_id, server_event(event_type, data))

    async def _send_error(self, exc: BaseAPIException, event_type: Optional[str], payload: dict):
        data = {"code": exc.code, "message": exc.detail, "event": event_type}
        for field in CORRELATION_FIELDS:
            if field in payload:
                data[field] = payload[field]
        await self._send("error", data)

    async def handle_raw(self, raw: str):
        """Parse one text frame and dispatch it."""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error(ValidationException(detail="Malformed JSON"), None, {})
            return

        event_type = payload.get("type") if isinstance(payload, dict) else None
        try:
            event = client_event_adapter.validate_python(payload)
        except ValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            await self._send_error(
                ValidationException(detail=f"Invalid {event_type or 'event'}: {errors}"),
                event_type,
                payload if isinstance(payload, dict) else {},
            )
            return

        await self.dispatch(event)

    async def dispatch(self, event):
        if self.state is SessionState.CLOSED:
            return

        try:
            if self.state is not SessionState.AUTHENTICATED and not isinstance(event, AuthenticateEvent):
                raise UnauthenticatedException(detail="Authenticate first")
            await self._handlers[event.type](event)
        except BaseAPIException as e:
            logger.debug(f"{event.type} from connection {self.connection_id} failed: {e.detail}")
            await self._send_error(e, event.type, event.model_dump())
        except (SQLAlchemyError, RedisError) as e:
            logger.error(f"{event.type} from connection {self.connection_id} failed: {e}", exc_info=True)
            await self._send_error(InternalServerErrorException(), event.type, event.model_dump())

    async def authenticate(self, token: str):
        """Authenticate with a token supplied at connect time."""
        await self.dispatch(AuthenticateEvent(type="authenticate", token=token))

    async def _authenticate(self, event):
        if self.state is SessionState.AUTHENTICATED:
            raise ConflictException(detail="Already authenticated")

        async with self._unit_of_work() as db:
            user = await AuthService(db).resolve_token(event.token)
            room_ids = await PresenceService(db).restore_online(user.id)

        # Identity is bound only once the restored presence is committed.
        self.user_id, self.username, self.display_name = user.id, user.username, user.display_name
        await self.manager.bind_user(self.connection_id, self.user_id)
        self.state = SessionState.AUTHENTICATED

        for room_id in room_ids:
            await self.manager.join_room(self.connection_id, room_id)
            self.joined_rooms.add(room_id)
            await self.notifier.presence_changed(
                "user_online", room_id,
                {**self._identity, "status": PresenceStatus.ONLINE.value},
                exclude=self.connection_id,
            )

        logger.info(f"User {self.username} ({self.user_id}) authenticated on {self.connection_id}")
        await self._send("authenticated", {**self._identity, "rooms": room_ids})

    async def _join_room(self, event):
        async with self._unit_of_work() as db:
            presence = await PresenceService(db).upsert(self.user_id, event.room_id, PresenceStatus.ONLINE)

        await self.manager.join_room(self.connection_id, event.room_id)
        self.joined_rooms.add(event.room_id)

        status = presence.status.value
        await self.notifier.presence_changed(
            "user_joined", event.room_id,
            {**self._identity, "status": status},
            exclude=self.connection_id,
        )
        await self._send("room_joined", {
            "room_id": event.room_id,
            "status": status,
            "joined_at": presence.joined_at.isoformat() if presence.joined_at else None,
        })

    async def _leave_room(self, event):
        if event.room_id not in self.joined_rooms:
            raise PermissionDeniedException(detail="Not in this room")

        async with self._unit_of_work() as db:
            await PresenceService(db).upsert(self.user_id, event.room_id, PresenceStatus.OFFLINE)

        await self.manager.leave_room(self.connection_id, event.room_id)
        self.joined_rooms.discard(event.room_id)

        await self.notifier.presence_changed("user_left", event.room_id, self._identity)
        await self._send("room_left", {"room_id": event.room_id})

    async def _send_room_message(self, event):
        async with self._unit_of_work() as db:
            message = await ChatService(db).send_room_message(
                self.user_id,
                event.room_id,
                MessageCreateRequest(
                    content=event.content,
                    message_type=event.message_type,
                    reply_to_id=event.reply_to_id,
                ),
            )

        if event.room_id not in self.joined_rooms:
            await self.manager.join_room(self.connection_id, event.room_id)
            self.joined_rooms.add(event.room_id)
        await self.notifier.room_message(message)

    async def _send_direct_message(self, event):
        async with self._unit_of_work() as db:
            message = await ChatService(db).send_direct_message(
                self.user_id,
                DirectMessageCreateRequest(
                    recipient_id=event.recipient_id,
                    content=event.content,
                    message_type=event.message_type,
                ),
            )

        delivered = await self.notifier.direct_message(message)
        await self._send("direct_message_sent", {
            **message.model_dump(mode="json"),
            "delivered": delivered,
        })

    async def _should_relay_typing(self, key: str, is_typing: bool) -> bool:
        if self.throttle is None:
            return True
        if not is_typing:
            await self.throttle.release(key)
            return True
        return await self.throttle.claim(key, settings.typing_throttle_seconds)

    async def _typing(self, event):
        key = f"typing:{self.user_id}:room:{event.room_id}"
        if not await self._should_relay_typing(key, event.is_typing):
            return
        await self.manager.broadcast_to_room(
            event.room_id,
            server_event("user_typing", {
                "room_id": event.room_id,
                **self._identity,
                "is_typing": event.is_typing,
            }),
            exclude=self.connection_id,
        )

    async def _typing_dm(self, event):
        key = f"typing:{self.user_id}:dm:{event.recipient_id}"
        if not await self._should_relay_typing(key, event.is_typing):
            return
        await self.manager.send_to_user(
            event.recipient_id,
            server_event("user_typing_dm", {**self._identity, "is_typing": event.is_typing}),
        )

    async def _add_reaction(self, event):
        async with self._unit_of_work() as db:
            room_id, groups = await ReactionService(db).add(event.message_id, self.user_id, event.emoji)
        await self.notifier.reactions_changed(
            "reaction_added", room_id, event.message_id, self.user_id, event.emoji.strip(), groups
        )

    async def _remove_reaction(self, event):
        async with self._unit_of_work() as db:
            room_id, groups = await ReactionService(db).remove(event.message_id, self.user_id, event.emoji)
        await self.notifier.reactions_changed(
            "reaction_removed", room_id, event.message_id, self.user_id, event.emoji.strip(), groups
        )

    async def _mark_as_read(self, event):
        async with self._unit_of_work() as db:
            room_id, receipt = await ReadReceiptService(db).mark_read(event.message_id, self.user_id)
        await self.notifier.message_read(room_id, receipt)

    async def _mark_direct_as_read(self, event):
        async with self._unit_of_work() as db:
            message = await ChatService(db).mark_direct_read(self.user_id, event.direct_message_id)
        await self.notifier.direct_message_read(message)

    async def _change_status(self, event):
        status = PresenceStatus(event.status)
        async with self._unit_of_work() as db:
            room_ids = await PresenceService(db).change_status(self.user_id, status)

        for room_id in room_ids:
            await self.notifier.presence_changed(
                "user_status_change", room_id,
                {**self._identity, "status": status.value},
                exclude=self.connection_id,
            )
        await self._send("status_changed", {"status": status.value, "rooms": room_ids})

    async def _relay_call(self, event_type: str, room_id: int, data: dict):
        await self.manager.broadcast_to_room(
            room_id,
            server_event(event_type, {"room_id": room_id, **self._identity, **data}),
            exclude=self.connection_id,
        )

    async def _call_user(self, event):
        await self._relay_call("call_user", event.room_id, {"signal": event.signal, "video": event.video})

    async def _accept_call(self, event):
        await self._relay_call("call_accepted", event.room_id, {"signal": event.signal})

    async def _end_call(self, event):
        await self._relay_call("call_ended", event.room_id, {})

    async def close(self):
        """
        Tear the connection down. Every live presence of the user goes
        offline and the affected rooms hear `user_offline`. Safe to call
        more than once and before authentication.
        """
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED

        try:
            if self.user_id is not None:
                async with self._unit_of_work() as db:
                    room_ids = await PresenceService(db).set_offline_everywhere(self.user_id)
                for room_id in room_ids:
                    await self.notifier.presence_changed(
                        "user_offline", room_id, self._identity, exclude=self.connection_id
                    )
                logger.info(f"User {self.username} ({self.user_id}) went offline in rooms {room_ids}")
        except (SQLAlchemyError, RedisError) as e:
            logger.error(f"Cleanup for connection {self.connection_id} failed: {e}", exc_info=True)
        finally:
            self.joined_rooms.clear()
            await self.manager.disconnect(self.connection_id)
