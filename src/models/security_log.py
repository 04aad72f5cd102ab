"""Append-only security audit log."""
from enum import StrEnum

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, CreatedAtMixin


class SecurityEvent(StrEnum):
    """Audited event types."""

    TOKEN_CREATED = "token_created"
    TOKEN_USED = "token_used"
    TOKEN_REVOKED = "token_revoked"
    TOKEN_EXPIRED = "token_expired"
    REVOKED_TOKEN_USED = "revoked_token_used"
    INVALID_TOKEN = "invalid_token"
    INACTIVE_USER = "inactive_user"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    SUCCESSFUL_LOGIN = "successful_login"
    FAILED_LOGIN = "failed_login_attempt"
    LOCKED_ACCOUNT_LOGIN = "login_attempt_locked_account"
    ACCOUNT_LOCKED = "account_locked_max_attempts"
    USER_CREATED = "user_created"
    USER_DEACTIVATED = "user_deactivated"
    USER_ACTIVATED = "user_activated"
    ROOT_USER_CREATED = "root_user_created"


class Severity(StrEnum):
    """Audit entry severity."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SecurityLog(Base, CreatedAtMixin):
    """
    One observed security event.

    Rows are only ever inserted. details must never contain raw token material.
    """

    __tablename__ = "security_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event: Mapped[str] = mapped_column(String(50), index=True)
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"),
        nullable=True,
        index=True,
    )
    token_prefix: Mapped[str | None] = mapped_column(String(11), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean)
    severity: Mapped[str] = mapped_column(String(10), default=Severity.INFO.value)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
