"""API token management endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    api_rate_limit,
    get_async_session,
    get_settings,
    require_session_auth,
)
from core.auth import authenticate_api_token
from core.config import Settings
from core.request_context import AuthContext, get_client_ip, get_user_agent
from models.api_token import serialize_permissions
from models.security_log import SecurityEvent
from models.user import UserRole
from schemas.token import (
    TokenCreate,
    TokenCreateResponse,
    TokenResponse,
    TokenRevokeResponse,
    TokenValidateRequest,
    TokenValidateResponse,
)
from services import token_service
from services.audit_service import record_security_event
from services.exceptions import TokenAccessDeniedError, TokenNotFoundError

router = APIRouter(
    prefix="/tokens",
    tags=["tokens"],
    dependencies=[Depends(api_rate_limit)],
)


def _invalid(
    status_code: int,
    detail: str,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Rejection body for the validate endpoint: the error plus `valid: false`."""
    return JSONResponse(
        status_code=status_code,
        content={"valid": False, "detail": detail},
        headers=headers,
    )


@router.post("/", response_model=TokenCreateResponse, status_code=201)
async def create_token(
    data: TokenCreate,
    request: Request,
    identity: AuthContext = Depends(require_session_auth),
    db: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> TokenCreateResponse:
    """
    Create a new API token.

    **Authentication: session only (API tokens not accepted - returns 403)**

    IMPORTANT: The plaintext token is only returned once. Store it securely.
    """
    api_token, plaintext = await token_service.create_token(
        db,
        identity.user.id,
        data,
        default_expiry_days=settings.token_default_expiry_days,
        max_expiry_days=settings.token_max_expiry_days,
        default_rate_limit=settings.token_default_rate_limit,
    )
    await record_security_event(
        db,
        SecurityEvent.TOKEN_CREATED,
        success=True,
        user_id=identity.user.id,
        token_prefix=api_token.token_prefix,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        details=f"Token '{api_token.name}' with permissions {','.join(api_token.permissions)}",
    )
    return TokenCreateResponse(
        id=api_token.id,
        name=api_token.name,
        token=plaintext,
        token_prefix=api_token.token_prefix,
        permissions=api_token.permissions,
        expires_at=api_token.expires_at,
        ip_whitelist=api_token.ip_whitelist,
        rate_limit=api_token.rate_limit,
        is_active=api_token.is_active,
        usage_count=api_token.usage_count,
        created_at=api_token.created_at,
    )


@router.get("/", response_model=list[TokenResponse])
async def list_tokens(
    identity: AuthContext = Depends(require_session_auth),
    db: AsyncSession = Depends(get_async_session),
) -> list[TokenResponse]:
    """
    List the current user's API tokens, newest first.

    **Authentication: session only (API tokens not accepted - returns 403)**

    Note: Plaintext tokens and hashes are never returned - only metadata.
    """
    tokens = await token_service.get_tokens(db, identity.user.id)
    return [TokenResponse.model_validate(t) for t in tokens]


@router.delete("/{token_id}", response_model=TokenRevokeResponse)
async def revoke_token(
    token_id: int,
    request: Request,
    identity: AuthContext = Depends(require_session_auth),
    db: AsyncSession = Depends(get_async_session),
) -> TokenRevokeResponse:
    """
    Revoke an API token. The row is kept for auditing.

    **Authentication: session only; the token's owner or a super admin.**

    Revoking an already revoked token succeeds without changing it.
    """
    try:
        api_token = await token_service.get_manageable_token(
            db,
            token_id,
            identity.user.id,
            is_super_admin=identity.user.role == UserRole.SUPER_ADMIN.value,
        )
    except TokenNotFoundError:
        raise HTTPException(status_code=404, detail="Token not found") from None
    except TokenAccessDeniedError:
        raise HTTPException(status_code=403, detail="Insufficient permissions") from None

    revoked = await token_service.revoke_token(db, token_id, revoked_by=identity.user.id)
    if revoked:
        await record_security_event(
            db,
            SecurityEvent.TOKEN_REVOKED,
            success=True,
            user_id=identity.user.id,
            token_prefix=api_token.token_prefix,
            ip_address=get_client_ip(request),
            user_agent=get_user_agent(request),
            details=f"Token {token_id} owned by user {api_token.user_id}",
        )
    return TokenRevokeResponse(
        message="Token revoked successfully",
        token_prefix=api_token.token_prefix,
    )


@router.post("/validate", response_model=TokenValidateResponse)
async def validate_token(
    data: TokenValidateRequest,
    request: Request,
    db: AsyncSession = Depends(get_async_session),
) -> TokenValidateResponse | JSONResponse:
    """
    Check whether a token would authenticate a request from this client.

    **Authentication: none (rate limited per IP)**

    This is a real authentication attempt: on success the token's usage
    counter and last-used time are updated and a token_used event is logged.
    Rejections keep their status code (400, 401 or 403) and carry
    `{"valid": false, "detail": ...}`.
    """
    if not token_service.is_valid_token_format(data.token):
        return _invalid(status.HTTP_400_BAD_REQUEST, "Invalid token format")

    try:
        identity = await authenticate_api_token(
            db,
            data.token,
            client_ip=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    except HTTPException as e:
        if e.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            raise
        return _invalid(e.status_code, e.detail, e.headers)

    api_token = await token_service.get_token_by_id(db, identity.token_id)
    return TokenValidateResponse(
        valid=True,
        token_prefix=api_token.token_prefix,
        permissions=serialize_permissions(identity.permissions or ()),
        rate_limit=api_token.rate_limit,
    )
