"""Pydantic schemas for the security audit log."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class SecurityLogResponse(BaseModel):
    """One audit entry."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    event: str
    user_id: int | None
    token_prefix: str | None
    ip_address: str | None
    user_agent: str | None
    success: bool
    severity: str
    details: str | None
    created_at: datetime
