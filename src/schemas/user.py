"""Pydantic schemas for user administration."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from models.user import UserRole


class UserCreate(BaseModel):
    """Schema for creating a user (super admin only)."""

    username: str = Field(..., min_length=3, max_length=50)
    password: str = Field(..., min_length=8, max_length=128)
    email: str | None = Field(default=None, max_length=255)
    role: UserRole = UserRole.MANAGER


class UserResponse(BaseModel):
    """User metadata. Password hashes are never serialized."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str | None
    role: UserRole
    is_active: bool
    failed_login_attempts: int
    account_locked_until: datetime | None
    last_login_at: datetime | None
    created_at: datetime
