"""Pydantic schemas for API token endpoints."""
import ipaddress
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator

from models.api_token import TokenPermission, serialize_permissions

TOKEN_WARNING = "Store this token securely. It will not be shown again."


class TokenCreate(BaseModel):
    """Schema for creating a new API token."""

    name: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="User-provided name for the token, e.g., 'CRM sync'",
    )
    permissions: list[TokenPermission] = Field(
        ...,
        min_length=1,
        description="Non-empty subset of read, write, admin.",
    )
    expires_at: datetime | None = Field(
        default=None,
        description="Optional ISO-8601 expiry. Defaults to 90 days, capped at 365 days.",
    )
    ip_whitelist: list[str] | None = Field(
        default=None,
        description="Optional list of IPv4/IPv6 addresses allowed to use the token.",
    )
    rate_limit: int | None = Field(
        default=None,
        ge=1,
        le=10000,
        description="Requests per hour. Defaults to 1000.",
    )

    @field_validator("permissions")
    @classmethod
    def normalize_permissions(cls, value: list[TokenPermission]) -> list[TokenPermission]:
        """Drop duplicates and order by vocabulary."""
        return [TokenPermission(p) for p in serialize_permissions(value)]

    @field_validator("expires_at")
    @classmethod
    def expires_in_future(cls, value: datetime | None) -> datetime | None:
        """Reject expiry dates that are already in the past."""
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        if value <= datetime.now(UTC):
            raise ValueError("expires_at must be in the future")
        return value

    @field_validator("ip_whitelist")
    @classmethod
    def validate_ip_addresses(cls, value: list[str] | None) -> list[str] | None:
        """Every entry must be an IPv4 or IPv6 literal."""
        if value is None:
            return None
        normalized = []
        for ip in value:
            try:
                normalized.append(str(ipaddress.ip_address(ip.strip())))
            except ValueError:
                raise ValueError(f"Invalid IP address in whitelist: {ip}") from None
        return normalized


class TokenResponse(BaseModel):
    """
    Schema for token list responses.

    Does NOT include the plaintext token or its hash - only metadata for identification.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    token_prefix: str
    permissions: list[TokenPermission]
    expires_at: datetime
    is_active: bool
    ip_whitelist: list[str] | None
    rate_limit: int
    last_used: datetime | None
    usage_count: int
    created_at: datetime
    revoked_at: datetime | None

    @computed_field
    @property
    def is_expired(self) -> bool:
        """Whether the token has passed its expiry."""
        return datetime.now(UTC) >= self.expires_at


class AdminTokenResponse(TokenResponse):
    """Token metadata including ownership, for the admin-wide listing."""

    user_id: int
    revoked_by: int | None


class TokenCreateResponse(BaseModel):
    """
    Response when creating a new token.

    IMPORTANT: The `token` field contains the plaintext token and is only shown
    once at creation time. It cannot be retrieved again.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    token: str = Field(
        ...,
        description="The plaintext token. Store this securely - it won't be shown again.",
    )
    token_prefix: str
    permissions: list[TokenPermission]
    expires_at: datetime
    ip_whitelist: list[str] | None
    rate_limit: int
    is_active: bool
    usage_count: int
    created_at: datetime
    warning: str = TOKEN_WARNING


class TokenRevokeResponse(BaseModel):
    """Confirmation of a revocation. Never carries the token itself."""

    message: str
    token_prefix: str


class TokenValidateRequest(BaseModel):
    """Raw token submitted to the diagnostic validate endpoint."""

    token: str = Field(..., max_length=200)


class TokenValidateResponse(BaseModel):
    """Result of a successful diagnostic validation."""

    valid: bool
    token_prefix: str
    permissions: list[TokenPermission]
    rate_limit: int
