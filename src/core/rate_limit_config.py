"""
Rate limiting configuration and types.

This module holds the policy (which limits apply to which scope); enforcement
lives in rate_limiter.py.
"""
from dataclasses import dataclass
from enum import StrEnum

from core.config import Settings

# Per-token limits are expressed in requests per hour.
TOKEN_RATE_WINDOW_SECONDS = 3600


class RateLimitScope(StrEnum):
    """What a rate limit bucket is keyed on."""

    LOGIN = "login"  # per client IP, login endpoint
    API = "api"  # per client IP, all other endpoints
    TOKEN = "token"  # per API token prefix


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed window limit: at most `max_requests` per `window_seconds`."""

    max_requests: int
    window_seconds: int


@dataclass
class RateLimitResult:
    """Result of a rate limit check with all info needed for headers."""

    allowed: bool
    limit: int  # Max requests in current window
    remaining: int  # Requests remaining in current window
    reset: int  # Unix timestamp when window resets
    retry_after: int  # Seconds until retry allowed (0 if allowed)


class RateLimitExceededError(Exception):
    """Raised when rate limit is exceeded."""

    def __init__(self, result: RateLimitResult) -> None:
        self.result = result
        super().__init__("Rate limit exceeded")


def get_ip_rate_limit(scope: RateLimitScope, settings: Settings) -> RateLimitConfig:
    """Per-IP limit for the login endpoint or for the API at large."""
    if scope == RateLimitScope.LOGIN:
        return RateLimitConfig(settings.login_rate_limit, settings.login_rate_window_seconds)
    return RateLimitConfig(settings.api_rate_limit, settings.api_rate_window_seconds)


def get_token_rate_limit(rate_limit: int) -> RateLimitConfig:
    """Hourly limit configured on an individual API token."""
    return RateLimitConfig(rate_limit, TOKEN_RATE_WINDOW_SECONDS)
