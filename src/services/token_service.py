"""
Service layer for API token operations.

Covers both halves of the token lifecycle: issuing credentials (generation,
hashing, expiry policy) and the persistent store (lookup, usage accounting,
revocation). Plaintext tokens exist only in the return value of create_token.
"""
import hashlib
import ipaddress
import re
import secrets
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import NamedTuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.api_token import ApiToken, serialize_permissions
from schemas.token import TokenCreate
from services.exceptions import TokenAccessDeniedError, TokenNotFoundError

TOKEN_TAG = "tk"
TOKEN_PATTERN = re.compile(r"^tk_[a-f0-9]{8}_[a-f0-9]{64}$")

DEFAULT_EXPIRY_DAYS = 90
MAX_EXPIRY_DAYS = 365
DEFAULT_RATE_LIMIT = 1000


class GeneratedToken(NamedTuple):
    """A freshly minted credential. `token` must be shown exactly once."""

    token: str
    token_hash: str
    token_prefix: str


class TokenRejection(StrEnum):
    """Reasons a stored token cannot authenticate a request."""

    REVOKED = "revoked"
    EXPIRED = "expired"
    IP_NOT_ALLOWED = "ip_not_allowed"


def generate_token() -> GeneratedToken:
    """
    Generate a secure API token.

    Format is `tk_<8 hex identifier>_<64 hex secret>`; the prefix is
    `tk_<identifier>`, which is enough to tell tokens apart in listings and
    logs without revealing anything usable.
    """
    identifier = secrets.token_hex(4)
    secret = secrets.token_hex(32)
    token = f"{TOKEN_TAG}_{identifier}_{secret}"
    return GeneratedToken(
        token=token,
        token_hash=hash_token(token),
        token_prefix=f"{TOKEN_TAG}_{identifier}",
    )


def hash_token(token: str) -> str:
    """Hash a token for comparison against stored hashes."""
    return hashlib.sha256(token.encode()).hexdigest()


def is_valid_token_format(token: str) -> bool:
    """Pure syntax check. Says nothing about whether the token exists."""
    return TOKEN_PATTERN.fullmatch(token) is not None


def extract_token_prefix(token: str) -> str | None:
    """Return `tk_<identifier>` for well-formed tokens, None otherwise."""
    if not is_valid_token_format(token):
        return None
    return token[: len(TOKEN_TAG) + 9]


def verify_token(token: str, token_hash: str) -> bool:
    """Constant-time comparison of a plaintext token against a stored hash."""
    return secrets.compare_digest(hash_token(token), token_hash)


def compute_expiration(
    expires_at: datetime | None,
    now: datetime | None = None,
    *,
    default_days: int = DEFAULT_EXPIRY_DAYS,
    max_days: int = MAX_EXPIRY_DAYS,
) -> datetime:
    """
    Apply the expiry policy to a requested expiration.

    Absent values default to `default_days` from now; anything beyond
    `max_days` from now is clamped down to that ceiling.
    """
    if now is None:
        now = datetime.now(UTC)
    ceiling = now + timedelta(days=max_days)
    if expires_at is None:
        return min(now + timedelta(days=default_days), ceiling)
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return min(expires_at, ceiling)


def ip_allowed(client_ip: str | None, whitelist: list[str]) -> bool:
    """
    Check a client address against an allowlist of literal addresses.

    Addresses are compared in normalized form, and IPv4-mapped IPv6 clients
    (::ffff:a.b.c.d) match their IPv4 entry. Unknown or unparseable client
    addresses never match.
    """
    if not client_ip:
        return False
    try:
        client = ipaddress.ip_address(client_ip.strip())
    except ValueError:
        return False
    if client.version == 6 and client.ipv4_mapped is not None:
        client = client.ipv4_mapped

    for entry in whitelist:
        try:
            allowed = ipaddress.ip_address(entry.strip())
        except ValueError:
            continue
        if allowed.version == 6 and allowed.ipv4_mapped is not None:
            allowed = allowed.ipv4_mapped
        if allowed == client:
            return True
    return False


def get_token_rejection(
    api_token: ApiToken,
    client_ip: str | None,
    now: datetime | None = None,
) -> TokenRejection | None:
    """
    Decide whether a stored token may authenticate a request.

    Checks run in a fixed order (revoked, expired, IP allowlist) so the reported
    reason is deterministic. Returns None when the token is usable.
    """
    if now is None:
        now = datetime.now(UTC)
    if not api_token.is_active or api_token.revoked_at is not None:
        return TokenRejection.REVOKED
    if now >= api_token.expires_at:
        return TokenRejection.EXPIRED
    if api_token.ip_whitelist and not ip_allowed(client_ip, api_token.ip_whitelist):
        return TokenRejection.IP_NOT_ALLOWED
    return None


async def create_token(
    db: AsyncSession,
    user_id: int,
    data: TokenCreate,
    *,
    default_expiry_days: int = DEFAULT_EXPIRY_DAYS,
    max_expiry_days: int = MAX_EXPIRY_DAYS,
    default_rate_limit: int = DEFAULT_RATE_LIMIT,
) -> tuple[ApiToken, str]:
    """
    Create a new API token for a user.

    Args:
        db: Database session.
        user_id: ID of the user creating the token.
        data: Token creation data.
        default_expiry_days: Lifetime applied when no expiry is requested.
        max_expiry_days: Upper bound on any token lifetime.
        default_rate_limit: Hourly limit applied when none is requested.

    Returns:
        Tuple of (ApiToken model, plaintext_token).
        The plaintext token is only available at creation time.

    Note:
        Does not commit. Caller (session generator) handles commit at request end.
    """
    generated = generate_token()

    api_token = ApiToken(
        user_id=user_id,
        name=data.name,
        token_hash=generated.token_hash,
        token_prefix=generated.token_prefix,
        permissions=serialize_permissions(data.permissions),
        expires_at=compute_expiration(
            data.expires_at,
            default_days=default_expiry_days,
            max_days=max_expiry_days,
        ),
        ip_whitelist=data.ip_whitelist or None,
        rate_limit=data.rate_limit if data.rate_limit is not None else default_rate_limit,
        is_active=True,
        usage_count=0,
    )
    db.add(api_token)
    await db.flush()
    await db.refresh(api_token)

    return api_token, generated.token


async def get_token_by_hash(db: AsyncSession, token_hash: str) -> ApiToken | None:
    """
    Look up a token by the hash of its plaintext.

    Returns revoked and expired rows too; callers decide what to do with them.
    """
    result = await db.execute(
        select(ApiToken).where(ApiToken.token_hash == token_hash),
    )
    return result.scalar_one_or_none()


async def get_token_by_id(db: AsyncSession, token_id: int) -> ApiToken | None:
    """Get a token by ID, regardless of owner."""
    return await db.get(ApiToken, token_id)


async def get_tokens(db: AsyncSession, user_id: int) -> list[ApiToken]:
    """
    Get all API tokens for a user, newest first.

    Args:
        db: Database session.
        user_id: ID of the user.

    Returns:
        List of ApiToken models (without plaintext tokens).
    """
    result = await db.execute(
        select(ApiToken)
        .where(ApiToken.user_id == user_id)
        .order_by(ApiToken.created_at.desc(), ApiToken.id.desc()),
    )
    return list(result.scalars().all())


async def get_all_tokens(db: AsyncSession, *, include_revoked: bool = True) -> list[ApiToken]:
    """Get every user's tokens, newest first."""
    query = select(ApiToken)
    if not include_revoked:
        query = query.where(ApiToken.revoked_at.is_(None))
    result = await db.execute(
        query.order_by(ApiToken.created_at.desc(), ApiToken.id.desc()),
    )
    return list(result.scalars().all())


async def record_token_use(
    db: AsyncSession,
    token_id: int,
    now: datetime | None = None,
) -> None:
    """
    Increment the usage counter and stamp last_used.

    The increment is evaluated by the database in a single UPDATE, so concurrent
    authentications with the same token never lose a count.

    Note:
        Does not commit. Caller (session generator) handles commit at request end.
    """
    if now is None:
        now = datetime.now(UTC)
    await db.execute(
        update(ApiToken)
        .where(ApiToken.id == token_id)
        .values(usage_count=ApiToken.usage_count + 1, last_used=now)
    )


async def revoke_token(
    db: AsyncSession,
    token_id: int,
    revoked_by: int,
    now: datetime | None = None,
) -> bool:
    """
    Revoke a token: deactivate it and record who revoked it and when.

    Idempotent. Only the first revocation stamps revoked_at/revoked_by; later
    calls leave the row untouched.

    Returns:
        True if this call revoked the token, False if it was already revoked
        or does not exist.

    Note:
        Does not commit. Caller (session generator) handles commit at request end.
    """
    if now is None:
        now = datetime.now(UTC)
    result = await db.execute(
        update(ApiToken)
        .where(ApiToken.id == token_id, ApiToken.revoked_at.is_(None))
        .values(is_active=False, revoked_at=now, revoked_by=revoked_by)
    )
    return result.rowcount > 0


async def get_manageable_token(
    db: AsyncSession,
    token_id: int,
    user_id: int,
    *,
    is_super_admin: bool = False,
) -> ApiToken:
    """
    Get a token the given user may manage: their own, or any for a super admin.

    Raises:
        TokenNotFoundError: If the token does not exist.
        TokenAccessDeniedError: If the token belongs to someone else.
    """
    api_token = await get_token_by_id(db, token_id)
    if api_token is None:
        raise TokenNotFoundError(token_id)
    if api_token.user_id != user_id and not is_super_admin:
        raise TokenAccessDeniedError(token_id)
    return api_token
