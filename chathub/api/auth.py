from fastapi import APIRouter, Depends
from chathub.core.security import token_lifetime
from chathub.models.user import User
from chathub.schemas.auth import RegisterRequest, LoginRequest, TokenResponse, UserResponse
from chathub.dependencies.auth_dependencies import enforce_auth_rate_limit, get_auth_service, get_current_user
from chathub.services.auth_service import AuthService

router = APIRouter(prefix="/api/auth", tags=["auth"])

def _token_response(user: User, access_token: str) -> TokenResponse:
    return TokenResponse(
        access_token=access_token,
        expires_in=int(token_lifetime().total_seconds()),
        user_id=user.id,
        username=user.username,
        display_name=user.display_name,
    )

@router.post("/register", response_model=TokenResponse, dependencies=[Depends(enforce_auth_rate_limit)])
async def register(
    request: RegisterRequest,
    auth_service: AuthService = Depends(get_auth_service)
):
    """
    Create an account and sign the caller in. Rate limited per client address.
    """
    return _token_response(*await auth_service.register_user(request))

@router.post("/login", response_model=TokenResponse, dependencies=[Depends(enforce_auth_rate_limit)])
async def login(
    request: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service)
):
    """
    Exchange username and password for a bearer token. Rate limited per client address.
    """
    return _token_response(*await auth_service.login_user(request))

@router.get("/me")
async def me(current_user: User = Depends(get_current_user)):
    return {
        **UserResponse.model_validate(current_user).model_dump(),
        "user_id": current_user.id,
        "email": current_user.email,
    }
