"""Login and identity endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    api_rate_limit,
    get_async_session,
    get_settings,
    login_rate_limit,
    require_permission,
)
from core.auth import create_session_token
from core.config import Settings
from core.permissions import effective_permissions
from core.request_context import AuthContext, get_client_ip, get_user_agent
from models.api_token import TokenPermission, serialize_permissions
from schemas.auth import IdentityResponse, LoginRequest, LoginResponse
from schemas.user import UserResponse
from services import user_service
from services.audit_service import commit_security_events
from services.exceptions import AccountLockedError, InvalidCredentialsError

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post(
    "/login",
    response_model=LoginResponse,
    dependencies=[Depends(login_rate_limit)],
)
async def login(
    data: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> LoginResponse:
    """
    Exchange a username and password for a session token.

    Five consecutive failures lock the account for 30 minutes (both
    configurable). Unknown users, wrong passwords and inactive accounts all get
    the same response.
    """
    try:
        user = await user_service.authenticate_user(
            db,
            data.username,
            data.password,
            max_failed_logins=settings.max_failed_logins,
            lockout_minutes=settings.account_lockout_minutes,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    except (InvalidCredentialsError, AccountLockedError) as e:
        # Keep the failed-attempt counter and audit entries.
        await commit_security_events(db)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    return LoginResponse(
        access_token=create_session_token(user, settings),
        expires_in=settings.jwt_expires_minutes * 60,
        user=UserResponse.model_validate(user),
    )


@router.get(
    "/me",
    response_model=IdentityResponse,
    dependencies=[Depends(api_rate_limit)],
)
async def get_me(
    identity: AuthContext = Depends(require_permission(TokenPermission.READ)),
) -> IdentityResponse:
    """Describe the identity behind the current credential."""
    return IdentityResponse(
        user=UserResponse.model_validate(identity.user),
        auth_type=identity.auth_type.value,
        token_prefix=identity.token_prefix,
        permissions=serialize_permissions(effective_permissions(identity)),
    )
