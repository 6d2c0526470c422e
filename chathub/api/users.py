from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional

from chathub.dependencies.auth_dependencies import get_current_user
from chathub.dependencies.service_dependencies import get_presence_service
from chathub.database.postgres import get_db_session
from chathub.models.user import User
from chathub.schemas.auth import UserResponse
from chathub.schemas.presence import PresenceResponse
from chathub.services.presence_service import PresenceService

router = APIRouter(prefix="/api/chat/users", tags=["users"])

@router.get("", response_model=List[UserResponse])
async def list_users(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    """
    Lists active users other than the caller.
    """
    result = await db.execute(
        select(User)
        .filter(User.id != current_user.id, User.is_active.is_(True))
        .order_by(User.display_name, User.id)
    )
    return result.scalars().all()

@router.get("/online", response_model=List[PresenceResponse])
async def list_online_users(
    room_id: Optional[int] = Query(None, description="Only users live in this room"),
    current_user: User = Depends(get_current_user),
    presence_service: PresenceService = Depends(get_presence_service)
):
    """
    Users with a live presence, most recently seen first.
    """
    return await presence_service.list_online(room_id=room_id)
