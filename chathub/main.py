from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy.exc import SQLAlchemyError

from chathub.core.config import settings
from chathub.core.error_handler import (
    custom_exception_handler,
    database_exception_handler,
    validation_exception_handler,
)
from chathub.core.exceptions import BaseAPIException
from chathub.core.log_config import logger

from chathub.api.auth import router as auth_router
from chathub.api.rooms import router as room_router
from chathub.api.direct_messages import router as direct_message_router
from chathub.api.messages import router as message_router
from chathub.api.users import router as user_router
from chathub.api.websocket import router as websocket_router
from chathub.database.postgres import initialize_db
from chathub.database.redis import redis_manager
from chathub.utils.timing_middleware import TimingMiddleware
from chathub.utils.websocket_manager import websocket_manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    await initialize_db()
    await redis_manager.connect()
    await websocket_manager.init_redis()
    logger.info("chathub started")
    yield
    await websocket_manager.close()
    await redis_manager.disconnect()

app = FastAPI(title="chathub", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(BaseAPIException, custom_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(SQLAlchemyError, database_exception_handler)
app.add_middleware(TimingMiddleware)

app.include_router(auth_router)
app.include_router(room_router)
app.include_router(direct_message_router)
app.include_router(message_router)
app.include_router(user_router)
app.include_router(websocket_router)

app.mount(
    settings.chat_upload_url_prefix,
    StaticFiles(directory=settings.chat_upload_dir, check_dir=False),
    name="chat-uploads",
)
