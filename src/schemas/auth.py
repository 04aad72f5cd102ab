"""Pydantic schemas for login and identity endpoints."""
from pydantic import BaseModel, Field

from models.api_token import TokenPermission
from schemas.user import UserResponse


class LoginRequest(BaseModel):
    """Username/password login."""

    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)


class LoginResponse(BaseModel):
    """Session token issued on successful login."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Session token lifetime in seconds.")
    user: UserResponse


class IdentityResponse(BaseModel):
    """The identity attached to the current request."""

    user: UserResponse
    auth_type: str
    token_prefix: str | None = None
    permissions: list[TokenPermission]
