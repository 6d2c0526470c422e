import asyncio
import json
import logging
from typing import Dict, Optional, Set
from uuid import uuid4

from fastapi import WebSocket
import redis.asyncio as redis
from redis.exceptions import RedisError

from chathub.core.config import settings

logger = logging.getLogger(__name__)

# This channel is used to keep the pubsub connection alive and listening.
DUMMY_CHANNEL = "server-control-channel"


def get_room_channel(room_id: int) -> str:
    """Returns the Redis channel name for a specific room."""
    return f"room:{room_id}"

def get_user_channel(user_id: int) -> str:
    """Returns the Redis channel name for a user's personal channel."""
    return f"user:{user_id}"

class WebsocketManager:
    """
    Tracks the WebSocket connections held by this instance and fans events
    out through Redis Pub/Sub, so every instance delivers to its own sockets.

    Connections are keyed by a connection id rather than by user, so a user
    may hold several sockets at once. Room and personal channels are
    subscribed while at least one local connection needs them.
    """

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self.redis_client: redis.Redis = None
        self.pubsub = None
        self.listener_task: asyncio.Task = None

        self.active_connections: Dict[str, WebSocket] = {}
        self.connection_users: Dict[str, int] = {}
        self.local_room_connections: Dict[int, Set[str]] = {}
        self.local_user_connections: Dict[int, Set[str]] = {}

    async def init_redis(self):
        """Initializes Redis client and starts the Pub/Sub listener task."""
        try:
            logger.info(f"Connecting to Redis at {self.redis_url}")
            self.redis_client = redis.from_url(
                self.redis_url, encoding="utf-8", decode_responses=True
            )
            await self.redis_client.ping()
        except Exception as e:
            logger.critical(f"Failed to connect to Redis: {e}")
            raise e

        self.pubsub = self.redis_client.pubsub()
        await self.pubsub.subscribe(DUMMY_CHANNEL)
        self.listener_task = asyncio.create_task(self._pubsub_listener())

    async def close(self):
        """Closes all connections and stops the listener task."""
        if self.listener_task:
            self.listener_task.cancel()
        if self.pubsub:
            await self.pubsub.unsubscribe()
            await self.pubsub.close()
        if self.redis_client:
            await self.redis_client.close()
        logger.info("WebsocketManager resources closed.")

    async def connect(self, websocket: WebSocket) -> str:
        """Accepts a WebSocket and returns the id it is tracked under."""
        await websocket.accept()
        connection_id = uuid4().hex
        self.active_connections[connection_id] = websocket
        return connection_id

    async def bind_user(self, connection_id: str, user_id: int):
        """Attaches an authenticated user to a connection and subscribes their personal channel."""
        self.connection_users[connection_id] = user_id
        connections = self.local_user_connections.setdefault(user_id, set())
        if not connections:
            await self.pubsub.subscribe(get_user_channel(user_id))
        connections.add(connection_id)

    async def disconnect(self, connection_id: str):
        """Forgets a connection and drops every subscription only it needed."""
        self.active_connections.pop(connection_id, None)

        for room_id in [r for r, conns in self.local_room_connections.items() if connection_id in conns]:
            await self.leave_room(connection_id, room_id)

        user_id = self.connection_users.pop(connection_id, None)
        if user_id is not None:
            connections = self.local_user_connections.get(user_id, set())
            connections.discard(connection_id)
            if not connections:
                self.local_user_connections.pop(user_id, None)
                await self.pubsub.unsubscribe(get_user_channel(user_id))
        logger.debug(f"Connection {connection_id} removed.")

    async def join_room(self, connection_id: str, room_id: int):
        """Subscribes a connection to a room, and this instance to the room channel if necessary."""
        connections = self.local_room_connections.setdefault(room_id, set())
        if not connections:
            await self.pubsub.subscribe(get_room_channel(room_id))
            logger.debug(f"This instance subscribed to room {room_id} channel.")
        connections.add(connection_id)

    async def leave_room(self, connection_id: str, room_id: int):
        """Unsubscribes a connection from a room, and this instance if it was the last one."""
        if room_id in self.local_room_connections:
            self.local_room_connections[room_id].discard(connection_id)
            if not self.local_room_connections[room_id]:
                del self.local_room_connections[room_id]
                await self.pubsub.unsubscribe(get_room_channel(room_id))
                logger.debug(f"This instance unsubscribed from room {room_id} channel.")

    async def broadcast_to_room(self, room_id: int, event: dict, exclude: Optional[str] = None):
        """Publishes an event to every connection in a room, on any instance."""
        await self._publish(get_room_channel(room_id), {"exclude": exclude, "event": event})

    async def send_to_user(self, user_id: int, event: dict):
        """Publishes an event to every connection of a user, on any instance."""
        await self._publish(get_user_channel(user_id), {"exclude": None, "event": event})

    async def send_to_connection(self, connection_id: str, event: dict):
        """Sends an event straight to one socket held by this instance."""
        await self._send_to_local_websocket(connection_id, json.dumps(event))

    async def is_user_connected(self, user_id: int) -> bool:
        """True when some instance is subscribed to the user's personal channel."""
        try:
            counts = await self.redis_client.pubsub_numsub(get_user_channel(user_id))
        except RedisError as e:
            logger.error(f"Failed to look up subscribers for user {user_id}: {e}")
            return user_id in self.local_user_connections
        return any(count > 0 for _, count in counts)

    async def _publish(self, channel: str, envelope: dict):
        # Fire-and-forget: publish errors are logged, never raised.
        try:
            await self.redis_client.publish(channel, json.dumps(envelope))
        except RedisError as e:
            logger.error(f"Failed to publish to {channel}: {e}")

    async def _send_to_local_websocket(self, connection_id: str, message: str):
        """Sends a message directly to a websocket connected to this instance."""
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return
        try:
            await websocket.send_text(message)
        except Exception as e:
            logger.warning(f"Failed to deliver to connection {connection_id}: {e}")

    async def _pubsub_listener(self):
        """Listens for messages on Redis and routes them to the correct local sockets."""
        logger.info("Pub/Sub listener started.")
        try:
            async for message in self.pubsub.listen():
                if message["type"] != "message" or message["channel"] == DUMMY_CHANNEL:
                    continue

                channel = message["channel"]
                try:
                    envelope = json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.warning(f"Dropping malformed payload on {channel}")
                    continue
                data = json.dumps(envelope["event"])
                exclude = envelope.get("exclude")

                kind, _, target = channel.partition(":")
                if kind == "room":
                    targets = self.local_room_connections.get(int(target), set())
                elif kind == "user":
                    targets = self.local_user_connections.get(int(target), set())
                else:
                    continue

                results = await asyncio.gather(
                    *[
                        self._send_to_local_websocket(connection_id, data)
                        for connection_id in list(targets)
                        if connection_id != exclude
                    ],
                    return_exceptions=True,
                )
                for result in results:
                    if isinstance(result, Exception):
                        logger.warning(f"Delivery on {channel} failed: {result}")

        except asyncio.CancelledError:
            logger.info("Pub/Sub listener task cancelled.")
        except Exception as e:
            logger.critical(f"Pub/Sub listener crashed: {e}", exc_info=True)
        finally:
            logger.info("Pub/Sub listener stopped.")

# Shared instance for the application; started and stopped by the lifespan.
websocket_manager = WebsocketManager(settings.redis_url)
