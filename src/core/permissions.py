"""
Role and permission gates, built as FastAPI dependencies.

Role gates apply to the authenticated user whatever the credential kind.
Permission gates check an API token's own permission set; session requests
get the permissions implied by the user's role instead.

Every denial is written to the security log and committed before the 403 is
raised, since the request session rolls back on the way out.
"""
from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.auth import get_current_identity
from core.request_context import AuthContext, get_client_ip, get_user_agent
from db.session import get_async_session
from models.api_token import TokenPermission
from models.security_log import SecurityEvent
from models.user import UserRole
from services.audit_service import commit_security_events, record_security_event

INSUFFICIENT_PERMISSIONS = "Insufficient permissions"
SESSION_REQUIRED = "This endpoint requires a session login, not an API token"

ROLE_PERMISSIONS: dict[UserRole, frozenset[TokenPermission]] = {
    UserRole.SUPER_ADMIN: frozenset(TokenPermission),
    UserRole.ADMIN: frozenset(TokenPermission),
    UserRole.MANAGER: frozenset({TokenPermission.READ, TokenPermission.WRITE}),
}


async def _deny(
    request: Request,
    db: AsyncSession,
    identity: AuthContext,
    reason: str,
    detail: str = INSUFFICIENT_PERMISSIONS,
) -> HTTPException:
    """Audit a denied request and build its 403."""
    await record_security_event(
        db,
        SecurityEvent.UNAUTHORIZED_ACCESS,
        success=False,
        user_id=identity.user.id,
        token_prefix=identity.token_prefix,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        details=f"{reason} on {request.method} {request.url.path}",
    )
    await commit_security_events(db)
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def effective_permissions(identity: AuthContext) -> frozenset[TokenPermission]:
    """Token permissions for API tokens, role-derived permissions for sessions."""
    if identity.permissions is not None:
        return identity.permissions
    try:
        return ROLE_PERMISSIONS[UserRole(identity.user.role)]
    except ValueError:
        return frozenset()


def has_role(identity: AuthContext, roles: tuple[UserRole, ...]) -> bool:
    return identity.user.role in {role.value for role in roles}


def require_roles(*roles: UserRole) -> Callable[..., Awaitable[AuthContext]]:
    """
    Build a dependency that admits only users holding one of `roles`.

    Roles are matched exactly; no role implies another.
    """
    required = ",".join(role.value for role in roles)

    async def dependency(
        request: Request,
        identity: AuthContext = Depends(get_current_identity),
        db: AsyncSession = Depends(get_async_session),
    ) -> AuthContext:
        if not has_role(identity, roles):
            raise await _deny(
                request, db, identity, f"Role {identity.user.role} not in {required}",
            )
        return identity

    return dependency


def require_permission(
    permission: TokenPermission,
) -> Callable[..., Awaitable[AuthContext]]:
    """Build a dependency that admits only identities holding `permission`."""

    async def dependency(
        request: Request,
        identity: AuthContext = Depends(get_current_identity),
        db: AsyncSession = Depends(get_async_session),
    ) -> AuthContext:
        if permission not in effective_permissions(identity):
            raise await _deny(
                request, db, identity, f"Insufficient permission: {permission.value} required",
            )
        return identity

    return dependency


async def require_session_auth(
    request: Request,
    identity: AuthContext = Depends(get_current_identity),
    db: AsyncSession = Depends(get_async_session),
) -> AuthContext:
    """
    Admit session-authenticated requests only.

    Token management is reserved for interactive logins so a leaked API token
    cannot mint or revoke other tokens.
    """
    if identity.is_api_token:
        raise await _deny(
            request, db, identity, "API token used on a session-only endpoint", SESSION_REQUIRED,
        )
    return identity
