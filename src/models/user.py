"""User model for admin accounts that own API tokens."""
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, TimestampMixin, UTCDateTime

if TYPE_CHECKING:
    from models.api_token import ApiToken


class UserRole(StrEnum):
    """Fixed role vocabulary. Roles carry no implicit hierarchy."""

    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"


class User(Base, TimestampMixin):
    """
    Admin CMS user.

    Users authenticate with username/password to obtain session tokens and may
    own any number of API tokens. Deactivating a user keeps their tokens but
    makes every one of them fail authentication.
    """

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(String(50), unique=True, index=True)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str] = mapped_column(String(60), comment="bcrypt hash")
    role: Mapped[str] = mapped_column(String(20), default=UserRole.MANAGER.value)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0)
    account_locked_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime(),
        nullable=True,
    )
    last_login_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    api_tokens: Mapped[list["ApiToken"]] = relationship(
        back_populates="user",
        foreign_keys="ApiToken.user_id",
    )
