# chathub/core/exceptions.py

from typing import Dict, Optional

from fastapi import HTTPException, status


class BaseAPIException(HTTPException):
    """
    Root of every error a chat operation can report.

    `code` is the machine-readable kind carried by realtime `error` events;
    `status_code` is what the HTTP surface answers with.
    """
    code = "internal"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(
            status_code=self.http_status,
            detail=detail or self.default_detail,
            headers=headers,
        )


# Authentication
class UnauthenticatedException(BaseAPIException):
    code = "unauthenticated"
    http_status = status.HTTP_401_UNAUTHORIZED
    default_detail = "Not authenticated"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail=detail, headers={"WWW-Authenticate": "Bearer"})

class InvalidCredentialsException(UnauthenticatedException):
    default_detail = "Invalid username or password"

class InvalidTokenException(UnauthenticatedException):
    default_detail = "Invalid token"


# Input
class ValidationException(BaseAPIException):
    """Malformed input: missing fields, bad enum values, bad lengths."""
    code = "validation_error"
    http_status = status.HTTP_400_BAD_REQUEST
    default_detail = "Input data validation failed"


# Authorization
class PermissionDeniedException(BaseAPIException):
    code = "permission_denied"
    http_status = status.HTTP_403_FORBIDDEN
    default_detail = "Access denied"


# Missing references
class NotFoundException(BaseAPIException):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND
    default_detail = "Not found"

class UserNotFoundException(NotFoundException):
    default_detail = "User not found"

class RoomNotFoundException(NotFoundException):
    default_detail = "Room not found"

class MessageNotFoundException(NotFoundException):
    default_detail = "Message not found"


# Capacity and conflicts
class CapacityExceededException(BaseAPIException):
    code = "capacity_exceeded"
    http_status = status.HTTP_409_CONFLICT
    default_detail = "Capacity exceeded"

class RoomFullException(CapacityExceededException):
    default_detail = "Room is full"

class ConflictException(BaseAPIException):
    """A repeated operation that has no idempotent meaning."""
    code = "conflict"
    http_status = status.HTTP_409_CONFLICT
    default_detail = "Conflict"

class UserAlreadyExistsException(ConflictException):
    default_detail = "Username or email already exists"


class TooManyRequestsException(BaseAPIException):
    code = "rate_limited"
    http_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = "Too many requests, please try again later"


# Store and transport failures
class InternalServerErrorException(BaseAPIException):
    pass

class MessageNotSentException(InternalServerErrorException):
    default_detail = "Message could not be sent"
