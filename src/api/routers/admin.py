"""Administrative read-only views over tokens and the security log."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    api_rate_limit,
    get_async_session,
    require_permission,
    require_roles,
)
from models.api_token import TokenPermission
from models.security_log import SecurityEvent
from models.user import UserRole
from schemas.security_log import SecurityLogResponse
from schemas.token import AdminTokenResponse
from services import audit_service, token_service

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[
        Depends(api_rate_limit),
        Depends(require_roles(UserRole.SUPER_ADMIN)),
        Depends(require_permission(TokenPermission.ADMIN)),
    ],
)


@router.get("/tokens", response_model=list[AdminTokenResponse])
async def list_all_tokens(
    include_revoked: bool = Query(default=True),
    db: AsyncSession = Depends(get_async_session),
) -> list[AdminTokenResponse]:
    """
    List every user's API tokens, newest first.

    **Authentication: super admin; API tokens also need the `admin` permission.**
    """
    tokens = await token_service.get_all_tokens(db, include_revoked=include_revoked)
    return [AdminTokenResponse.model_validate(t) for t in tokens]


@router.get("/security-logs", response_model=list[SecurityLogResponse])
async def list_security_logs(
    limit: int = Query(default=100, ge=1, le=1000),
    event: SecurityEvent | None = Query(default=None),
    user_id: int | None = Query(default=None),
    db: AsyncSession = Depends(get_async_session),
) -> list[SecurityLogResponse]:
    """Security events, newest first."""
    logs = await audit_service.get_security_logs(
        db, limit=limit, event=event, user_id=user_id,
    )
    return [SecurityLogResponse.model_validate(entry) for entry in logs]
