"""Request context types for tracking who made a request and how."""
from dataclasses import dataclass
from enum import StrEnum

from fastapi import Request

from models.api_token import TokenPermission
from models.user import User


class AuthType(StrEnum):
    """Authentication method used for the request."""

    SESSION = "session"
    API_TOKEN = "api_token"


@dataclass(frozen=True)
class AuthContext:
    """
    The authenticated identity attached to a request.

    For API tokens, `permissions` is the token's own permission set and the
    token fields are populated. For sessions those fields are None and access
    is governed by the user's role.
    """

    user: User
    auth_type: AuthType
    permissions: frozenset[TokenPermission] | None = None
    token_id: int | None = None
    token_prefix: str | None = None  # Only set for API token auth, e.g. "tk_1a2b3c4d"

    @property
    def is_api_token(self) -> bool:
        return self.auth_type == AuthType.API_TOKEN


def get_client_ip(request: Request) -> str | None:
    """Transport-level client address, or None when the server cannot tell."""
    if request.client is None:
        return None
    return request.client.host


def get_user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")
