"""Security audit log: best-effort, append-only event recording."""
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.security_log import SecurityEvent, SecurityLog, Severity

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


async def record_security_event(
    db: AsyncSession,
    event: SecurityEvent,
    *,
    success: bool,
    user_id: int | None = None,
    token_prefix: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    details: str | None = None,
    severity: Severity | None = None,
) -> None:
    """
    Record a security event in the application log and the security_logs table.

    The insert runs inside a savepoint so a failing write cannot poison the
    surrounding request transaction. Failures are logged and swallowed: auditing
    must never decide the outcome of an authentication.

    Note:
        Does not commit. Caller (session generator) handles commit at request end.
    """
    if severity is None:
        severity = Severity.INFO if success else Severity.WARNING

    logger.log(
        _LOG_LEVELS[severity],
        "security_event",
        extra={
            "event": event.value,
            "success": success,
            "user_id": user_id,
            "token_prefix": token_prefix,
            "ip_address": ip_address,
            "details": details,
        },
    )

    entry = SecurityLog(
        event=event.value,
        success=success,
        user_id=user_id,
        token_prefix=token_prefix,
        ip_address=ip_address,
        user_agent=user_agent[:500] if user_agent else None,
        details=details,
        severity=severity.value,
    )
    try:
        async with db.begin_nested():
            db.add(entry)
    except SQLAlchemyError:
        logger.exception("Failed to record security event %s", event.value)


async def get_security_logs(
    db: AsyncSession,
    *,
    limit: int = 100,
    event: SecurityEvent | None = None,
    user_id: int | None = None,
) -> list[SecurityLog]:
    """Return audit entries, newest first."""
    query = select(SecurityLog)
    if event is not None:
        query = query.where(SecurityLog.event == event.value)
    if user_id is not None:
        query = query.where(SecurityLog.user_id == user_id)
    result = await db.execute(
        query.order_by(SecurityLog.id.desc()).limit(limit),
    )
    return list(result.scalars().all())


async def commit_security_events(db: AsyncSession) -> None:
    """
    Commit pending security events ahead of a rejection.

    The request session rolls back on exceptions, which would otherwise discard
    the audit trail of the rejected attempt.
    """
    try:
        await db.commit()
    except SQLAlchemyError:
        logger.exception("Failed to persist security events")
