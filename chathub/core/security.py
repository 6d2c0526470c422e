from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from passlib.context import CryptContext

from ..core.config import settings
from ..core.exceptions import InvalidTokenException

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def hash_password(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def token_lifetime() -> timedelta:
    return timedelta(hours=settings.jwt_expiry_hours)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Sign a bearer token carrying `data` as claims.

    Args:
        data: Claims to embed; chat expects at least `user_id`
        expires_delta: Lifetime of the token, defaults to `settings.jwt_expiry_hours`
    """
    issued_at = datetime.now(timezone.utc)
    claims = {
        **data,
        "iat": issued_at,
        "exp": issued_at + (expires_delta or token_lifetime()),
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)

def verify_token(token: str) -> dict:
    """
    Decode a bearer token and return its claims.

    Raises:
        InvalidTokenException: If the token is expired, tampered with or malformed
    """
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise InvalidTokenException(detail="Token has expired")
    except jwt.PyJWTError:
        raise InvalidTokenException(detail="Invalid authentication credentials")
