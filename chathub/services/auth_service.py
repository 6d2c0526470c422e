from typing import Tuple

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from chathub.core.exceptions import (
    InvalidCredentialsException,
    InvalidTokenException,
    UserAlreadyExistsException,
)
from chathub.core.log_config import logger
from chathub.core.security import create_access_token, hash_password, verify_password, verify_token
from chathub.models.user import User
from chathub.schemas.auth import LoginRequest, RegisterRequest


class AuthService:
    """
    Identity resolver for chat: issues bearer tokens on register/login and
    maps a token back to an active user for both HTTP and WebSocket callers.
    """

    def __init__(self, db_session: AsyncSession):
        self.db_session = db_session

    @staticmethod
    def _issue_token(user: User) -> str:
        return create_access_token({"user_id": user.id, "username": user.username})

    async def register_user(self, request: RegisterRequest) -> Tuple[User, str]:
        """
        Create an account.

        Returns:
            A tuple (user, access_token)

        Raises:
            UserAlreadyExistsException: If the username or email is taken
        """
        taken = await self.db_session.execute(
            select(User.id).filter(or_(User.username == request.username, User.email == request.email))
        )
        if taken.first() is not None:
            raise UserAlreadyExistsException()

        user = User(
            username=request.username,
            display_name=request.display_name,
            email=request.email,
            hashed_password=hash_password(request.password),
            content_category=request.content_category,
        )
        self.db_session.add(user)
        try:
            await self.db_session.commit()
        except IntegrityError:
            # Lost a race against a concurrent registration.
            await self.db_session.rollback()
            raise UserAlreadyExistsException()
        await self.db_session.refresh(user)

        logger.info(f"Registered user {user.username} ({user.id})")
        return user, self._issue_token(user)

    async def login_user(self, request: LoginRequest) -> Tuple[User, str]:
        result = await self.db_session.execute(select(User).filter(User.username == request.username))
        user = result.scalar_one_or_none()

        if user is None or not user.is_active or not verify_password(request.password, user.hashed_password):
            raise InvalidCredentialsException()

        return user, self._issue_token(user)

    async def resolve_token(self, token: str) -> User:
        """
        Map a bearer credential to its user.

        Raises:
            InvalidTokenException: missing, malformed or expired token, or
                a token whose user no longer exists or is inactive
        """
        if not token:
            raise InvalidTokenException(detail="Token not provided")

        claims = verify_token(token)
        try:
            user_id = int(claims["user_id"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenException()

        user = await self.db_session.get(User, user_id)
        if user is None or not user.is_active:
            raise InvalidTokenException(detail="User not found")
        return user
