from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from chathub.core.log_config import logger
from chathub.database.redis import RedisManager
from chathub.dependencies.service_dependencies import (
    get_rate_limiter,
    get_session_factory,
    get_websocket_manager,
)
from chathub.services.session_coordinator import ChatSession
from chathub.utils.websocket_manager import WebsocketManager

router = APIRouter(prefix="/ws", tags=["websocket"])


@router.websocket("")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(default=None),
    manager: WebsocketManager = Depends(get_websocket_manager),
    session_factory=Depends(get_session_factory),
    throttle: RedisManager = Depends(get_rate_limiter),
):
    """
    Realtime chat channel. Clients authenticate either with `?token=` on
    connect or with an `authenticate` event as their first frame.
    """
    connection_id = await manager.connect(websocket)
    session = ChatSession(connection_id, manager, session_factory, throttle=throttle)
    logger.info(f"Connection {connection_id} opened.")

    try:
        if token:
            await session.authenticate(token)

        while True:
            data = await websocket.receive_text()
            logger.debug(f"Data received on {connection_id}: {data}")
            await session.handle_raw(data)

    except WebSocketDisconnect as e:
        logger.info(f"Connection {connection_id} closed. Code: {e.code}, Reason: {e.reason}")

    except Exception as e:
        logger.error(f"An unhandled error occurred on connection {connection_id}: {e}", exc_info=True)

    finally:
        await session.close()
