"""
Request authentication for session tokens and API tokens.

Both credential kinds arrive as `Authorization: Bearer <token>`. Tokens that
start with `tk_` are API tokens, validated against the hashed token store;
anything else is treated as a session JWT issued by /auth/login. Either way
the result is an AuthContext, attached to request.state.auth.
"""
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, NoReturn

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from core.rate_limit_config import RateLimitExceededError, RateLimitScope, get_token_rate_limit
from core.rate_limiter import check_rate_limit, rate_limit_key
from core.request_context import AuthContext, AuthType, get_client_ip, get_user_agent
from db.session import get_async_session
from models.security_log import SecurityEvent, Severity
from models.user import User
from services import token_service
from services.audit_service import commit_security_events, record_security_event
from services.token_service import TokenRejection

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme
security = HTTPBearer(auto_error=False)

API_TOKEN_MARKER = f"{token_service.TOKEN_TAG}_"
INVALID_TOKEN_DETAIL = "Invalid or expired token"


@dataclass(frozen=True)
class ApiTokenCredential:
    """Bearer value that claims to be an API token."""

    token: str


@dataclass(frozen=True)
class SessionCredential:
    """Bearer value to be verified as a session JWT."""

    token: str


Credential = ApiTokenCredential | SessionCredential


def parse_credential(token: str) -> Credential:
    """Classify a bearer value by its prefix. No validation happens here."""
    if token.startswith(API_TOKEN_MARKER):
        return ApiTokenCredential(token)
    return SessionCredential(token)


def _unauthorized(detail: str = INVALID_TOKEN_DETAIL) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _reject(db: AsyncSession, exc: Exception) -> NoReturn:
    await commit_security_events(db)
    raise exc


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def create_session_token(
    user: User,
    settings: Settings,
    now: datetime | None = None,
) -> str:
    """Issue a signed session JWT for a user who just logged in."""
    if now is None:
        now = datetime.now(UTC)
    payload = {
        "sub": str(user.id),
        "username": user.username,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(minutes=settings.jwt_expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_session_token(token: str, settings: Settings) -> dict[str, Any]:
    """
    Decode and validate a session JWT.

    Raises:
        HTTPException: 401 if the token is malformed, badly signed or expired.
    """
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "iat", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        logger.info("Expired session token rejected")
        raise _unauthorized() from None
    except jwt.PyJWTError as e:
        # Log full details for debugging (server-side only)
        logger.warning("Session token validation failed: %s", e)
        raise _unauthorized() from None


async def authenticate_session(
    db: AsyncSession,
    token: str,
    settings: Settings,
) -> AuthContext:
    """Resolve a session JWT to an active user."""
    payload = decode_session_token(token, settings)
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        logger.warning("Session token carries a non-numeric subject")
        raise _unauthorized() from None

    user = await db.get(User, user_id)
    if user is None or not user.is_active:
        logger.warning("Session token for missing or inactive user", extra={"user_id": user_id})
        raise _unauthorized()

    return AuthContext(user=user, auth_type=AuthType.SESSION)


# ---------------------------------------------------------------------------
# API tokens
# ---------------------------------------------------------------------------


async def authenticate_api_token(
    db: AsyncSession,
    token: str,
    *,
    client_ip: str | None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> AuthContext:
    """
    Validate an API token and resolve it to an AuthContext.

    Steps, in order: format check, hash lookup, revoked/expired/IP allowlist
    checks, owner lookup, per-token rate limit, usage accounting. The usage
    bump and its audit row are committed before returning. Every failure
    past the format check is written to the security log before the request is
    rejected; responses stay generic so callers learn nothing about which check
    failed, except for the IP allowlist (403).

    Raises:
        HTTPException: 401 for unusable tokens, 403 for a disallowed client IP,
            500 when the token store cannot be reached.
        RateLimitExceededError: The token's hourly limit is exhausted.
    """
    if not token_service.is_valid_token_format(token):
        # No lookup, no audit entry: malformed input never reaches storage.
        logger.warning("Malformed API token rejected", extra={"ip_address": client_ip})
        raise _unauthorized()

    try:
        return await _authenticate_api_token(
            db, token, client_ip=client_ip, user_agent=user_agent, now=now,
        )
    except SQLAlchemyError:
        logger.exception("API token authentication failed", extra={"ip_address": client_ip})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication failed",
        ) from None


async def _authenticate_api_token(
    db: AsyncSession,
    token: str,
    *,
    client_ip: str | None,
    user_agent: str | None,
    now: datetime | None,
) -> AuthContext:
    if now is None:
        now = datetime.now(UTC)
    token_prefix = token_service.extract_token_prefix(token)
    audit = {"token_prefix": token_prefix, "ip_address": client_ip, "user_agent": user_agent}

    api_token = await token_service.get_token_by_hash(db, token_service.hash_token(token))
    if api_token is None:
        await record_security_event(
            db, SecurityEvent.INVALID_TOKEN, success=False, details="Unknown token", **audit,
        )
        await _reject(db, _unauthorized())

    rejection = token_service.get_token_rejection(api_token, client_ip, now)
    if rejection == TokenRejection.REVOKED:
        await record_security_event(
            db,
            SecurityEvent.REVOKED_TOKEN_USED,
            success=False,
            user_id=api_token.user_id,
            severity=Severity.ERROR,
            **audit,
        )
        await _reject(db, _unauthorized())
    if rejection == TokenRejection.EXPIRED:
        await record_security_event(
            db,
            SecurityEvent.TOKEN_EXPIRED,
            success=False,
            user_id=api_token.user_id,
            details=f"Expired at {api_token.expires_at.isoformat()}",
            **audit,
        )
        await _reject(db, _unauthorized())
    if rejection == TokenRejection.IP_NOT_ALLOWED:
        await record_security_event(
            db,
            SecurityEvent.UNAUTHORIZED_ACCESS,
            success=False,
            user_id=api_token.user_id,
            severity=Severity.ERROR,
            details=f"Client IP {client_ip or 'unknown'} not in token whitelist",
            **audit,
        )
        await _reject(
            db,
            HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="IP address not authorized",
            ),
        )

    user = await db.get(User, api_token.user_id)
    if user is None or not user.is_active:
        await record_security_event(
            db,
            SecurityEvent.INACTIVE_USER,
            success=False,
            user_id=api_token.user_id,
            details="Token owner is inactive",
            **audit,
        )
        await _reject(db, _unauthorized())

    limit = await check_rate_limit(
        rate_limit_key(RateLimitScope.TOKEN, str(api_token.id)),
        get_token_rate_limit(api_token.rate_limit),
    )
    if not limit.allowed:
        await record_security_event(
            db,
            SecurityEvent.RATE_LIMIT_EXCEEDED,
            success=False,
            user_id=user.id,
            details=f"Hourly limit of {api_token.rate_limit} reached",
            **audit,
        )
        await _reject(db, RateLimitExceededError(limit))

    await token_service.record_token_use(db, api_token.id, now)
    await record_security_event(db, SecurityEvent.TOKEN_USED, success=True, user_id=user.id, **audit)
    # The use is durable before any later handler can roll the request back.
    await db.commit()

    return AuthContext(
        user=user,
        auth_type=AuthType.API_TOKEN,
        permissions=api_token.permission_set,
        token_id=api_token.id,
        token_prefix=api_token.token_prefix,
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


async def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: AsyncSession = Depends(get_async_session),
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    """
    Dependency that authenticates the request and returns its AuthContext.

    The context is also stored on request.state.auth for downstream handlers.
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    credential = parse_credential(credentials.credentials)
    if isinstance(credential, ApiTokenCredential):
        identity = await authenticate_api_token(
            db,
            credential.token,
            client_ip=get_client_ip(request),
            user_agent=get_user_agent(request),
        )
    else:
        identity = await authenticate_session(db, credential.token, settings)

    request.state.auth = identity
    return identity
