"""API Token model for long-lived, permission-scoped credentials."""
from collections.abc import Iterable
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, CreatedAtMixin, UTCDateTime

if TYPE_CHECKING:
    from models.user import User


class TokenPermission(StrEnum):
    """Permission vocabulary for API tokens."""

    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


PERMISSION_ORDER: tuple[TokenPermission, ...] = tuple(TokenPermission)


def serialize_permissions(permissions: Iterable[str]) -> list[str]:
    """Serialize a permission set as a list in vocabulary order, without duplicates."""
    unique = {TokenPermission(p) for p in permissions}
    return [p.value for p in PERMISSION_ORDER if p in unique]


class ApiToken(Base, CreatedAtMixin):
    """
    API Token model for programmatic access.

    Tokens are stored hashed - plaintext is only shown once at creation.
    The token_prefix allows identification without exposing the full token.
    Rows are never deleted: revocation flips is_active and records who revoked it.
    """

    __tablename__ = "api_tokens"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id"),
        index=True,
    )
    name: Mapped[str] = mapped_column(
        String(100),
        comment="User-provided name, e.g., 'CRM sync', 'Analytics export'",
    )
    token_hash: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        comment="SHA-256 hash of the token",
    )
    token_prefix: Mapped[str] = mapped_column(
        String(11),
        comment="Tag plus identifier for display, e.g., 'tk_1a2b3c4d'",
    )
    permissions: Mapped[list[str]] = mapped_column(JSON, default=list)

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime())
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    revoked_by: Mapped[int | None] = mapped_column(
        ForeignKey("users.id"),
        nullable=True,
    )

    ip_whitelist: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    rate_limit: Mapped[int] = mapped_column(
        Integer,
        default=1000,
        comment="Requests per hour",
    )

    last_used: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")

    user: Mapped["User"] = relationship(
        back_populates="api_tokens",
        foreign_keys=[user_id],
    )

    @property
    def permission_set(self) -> frozenset[TokenPermission]:
        """Permissions decoded into the enum vocabulary."""
        return frozenset(TokenPermission(p) for p in self.permissions or [])
