"""Service layer for user accounts: passwords, login lockout, administration."""
import logging
from datetime import UTC, datetime, timedelta

import bcrypt
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.security_log import SecurityEvent, Severity
from models.user import User, UserRole
from schemas.user import UserCreate
from services.audit_service import record_security_event
from services.exceptions import (
    AccountLockedError,
    InvalidCredentialsError,
    UsernameTakenError,
    UserNotFoundError,
)

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 12
ROOT_USERNAME = "root"


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode()


def verify_password(password: str, password_hash: str) -> bool:
    """Check a password against a bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    """Get a user by ID."""
    return await db.get(User, user_id)


async def get_user_by_username(db: AsyncSession, username: str) -> User | None:
    """Get a user by username."""
    result = await db.execute(select(User).where(User.username == username))
    return result.scalar_one_or_none()


async def get_users(db: AsyncSession) -> list[User]:
    """Get all users ordered by ID."""
    result = await db.execute(select(User).order_by(User.id))
    return list(result.scalars().all())


async def create_user(
    db: AsyncSession,
    data: UserCreate,
    *,
    created_by: int | None = None,
) -> User:
    """
    Create a user with a bcrypt-hashed password.

    Raises:
        UsernameTakenError: If the username already exists.

    Note:
        Does not commit. Caller (session generator) handles commit at request end.
    """
    if await get_user_by_username(db, data.username) is not None:
        raise UsernameTakenError(data.username)

    user = User(
        username=data.username,
        email=data.email,
        password_hash=hash_password(data.password),
        role=data.role.value,
        is_active=True,
        failed_login_attempts=0,
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)

    await record_security_event(
        db,
        SecurityEvent.USER_CREATED,
        success=True,
        user_id=created_by,
        details=f"Created user {user.username} (id={user.id}, role={user.role})",
    )
    return user


async def set_user_active(
    db: AsyncSession,
    user_id: int,
    *,
    active: bool,
    changed_by: int,
) -> User:
    """
    Activate or deactivate a user.

    Deactivation leaves the user's API tokens in place; they stop authenticating
    because the owner is inactive. Reactivation also clears any login lockout.

    Raises:
        UserNotFoundError: If the user does not exist.
    """
    user = await get_user_by_id(db, user_id)
    if user is None:
        raise UserNotFoundError(user_id)

    user.is_active = active
    if active:
        user.failed_login_attempts = 0
        user.account_locked_until = None
    await db.flush()
    await db.refresh(user)

    await record_security_event(
        db,
        SecurityEvent.USER_ACTIVATED if active else SecurityEvent.USER_DEACTIVATED,
        success=True,
        user_id=changed_by,
        details=f"User {user.username} (id={user.id})",
    )
    return user


async def authenticate_user(
    db: AsyncSession,
    username: str,
    password: str,
    *,
    max_failed_logins: int,
    lockout_minutes: int,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> User:
    """
    Verify a username/password pair, enforcing the failed-attempt lockout.

    Every outcome is written to the security log. Failed attempts are counted
    with a database-side increment; reaching `max_failed_logins` locks the
    account for `lockout_minutes`.

    Raises:
        InvalidCredentialsError: Unknown user, inactive user or wrong password.
        AccountLockedError: The account is currently locked.

    Note:
        Does not commit. Callers that turn these errors into HTTP responses must
        commit first so the recorded attempts survive the request rollback.
    """
    if now is None:
        now = datetime.now(UTC)
    audit = {"ip_address": ip_address, "user_agent": user_agent}

    user = await get_user_by_username(db, username)
    if user is None:
        await record_security_event(
            db,
            SecurityEvent.FAILED_LOGIN,
            success=False,
            details=f"Unknown username: {username[:50]}",
            **audit,
        )
        raise InvalidCredentialsError()

    if user.account_locked_until is not None:
        if user.account_locked_until > now:
            await record_security_event(
                db,
                SecurityEvent.LOCKED_ACCOUNT_LOGIN,
                success=False,
                user_id=user.id,
                **audit,
            )
            raise AccountLockedError()
        # Lock has lapsed; start counting from zero again.
        user.account_locked_until = None
        user.failed_login_attempts = 0
        await db.flush()

    if not user.is_active:
        await record_security_event(
            db,
            SecurityEvent.FAILED_LOGIN,
            success=False,
            user_id=user.id,
            details="Inactive account",
            **audit,
        )
        raise InvalidCredentialsError()

    if not verify_password(password, user.password_hash):
        await db.execute(
            update(User)
            .where(User.id == user.id)
            .values(failed_login_attempts=User.failed_login_attempts + 1),
        )
        attempts = await db.scalar(
            select(User.failed_login_attempts).where(User.id == user.id),
        )
        await record_security_event(
            db,
            SecurityEvent.FAILED_LOGIN,
            success=False,
            user_id=user.id,
            details=f"Failed attempt {attempts}",
            **audit,
        )
        if attempts is not None and attempts >= max_failed_logins:
            user.account_locked_until = now + timedelta(minutes=lockout_minutes)
            await db.flush()
            await record_security_event(
                db,
                SecurityEvent.ACCOUNT_LOCKED,
                success=False,
                user_id=user.id,
                severity=Severity.ERROR,
                details=f"Locked for {lockout_minutes} minutes after {attempts} failed attempts",
                **audit,
            )
        raise InvalidCredentialsError()

    user.failed_login_attempts = 0
    user.account_locked_until = None
    user.last_login_at = now
    await db.flush()
    await db.refresh(user)

    await record_security_event(
        db,
        SecurityEvent.SUCCESSFUL_LOGIN,
        success=True,
        user_id=user.id,
        **audit,
    )
    return user


async def ensure_root_user(db: AsyncSession, password: str | None) -> User | None:
    """
    Create the bootstrap super admin if it does not exist yet.

    Without a configured password nothing is created; an existing root user is
    left untouched either way.

    Returns:
        The newly created root user, or None if nothing was created.
    """
    if await get_user_by_username(db, ROOT_USERNAME) is not None:
        return None
    if not password:
        logger.warning(
            "ROOT_PASSWORD is not set; skipping creation of the '%s' user",
            ROOT_USERNAME,
        )
        return None

    user = User(
        username=ROOT_USERNAME,
        password_hash=hash_password(password),
        role=UserRole.SUPER_ADMIN.value,
        is_active=True,
        failed_login_attempts=0,
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)

    await record_security_event(
        db,
        SecurityEvent.ROOT_USER_CREATED,
        success=True,
        user_id=user.id,
        details=f"Bootstrap super admin created (id={user.id})",
    )
    logger.info("Created root user", extra={"user_id": user.id})
    return user
