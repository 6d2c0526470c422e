from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from chathub.core.config import settings
from chathub.core.exceptions import TooManyRequestsException, UnauthenticatedException
from chathub.database.postgres import get_db_session
from chathub.database.redis import RedisManager
from chathub.dependencies.service_dependencies import get_rate_limiter
from chathub.models.user import User
from chathub.services.auth_service import AuthService

security = HTTPBearer(auto_error=False)

def get_auth_service(db: AsyncSession = Depends(get_db_session)) -> AuthService:
    """
    Dependency that provides an instance of AuthService with an active database session.
    """
    return AuthService(db)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    auth_service: AuthService = Depends(get_auth_service),
) -> User:
    """
    Dependency for standard HTTP routes to get the current user from a Bearer token.
    """
    if credentials is None:
        raise UnauthenticatedException()
    return await auth_service.resolve_token(credentials.credentials)


async def enforce_auth_rate_limit(
    request: Request,
    limiter: RedisManager = Depends(get_rate_limiter),
):
    """
    Fixed-window limit on auth endpoints, counted per client address.
    """
    client = request.client.host if request.client else "unknown"
    hits = await limiter.hit(f"auth:{client}", settings.auth_rate_window_seconds)
    if hits > settings.auth_rate_limit:
        raise TooManyRequestsException()
