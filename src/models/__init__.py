"""SQLAlchemy models."""
from models.api_token import ApiToken, TokenPermission
from models.base import Base, CreatedAtMixin, TimestampMixin, UTCDateTime
from models.security_log import SecurityEvent, SecurityLog, Severity
from models.user import User, UserRole

__all__ = [
    "ApiToken",
    "Base",
    "CreatedAtMixin",
    "SecurityEvent",
    "SecurityLog",
    "Severity",
    "TimestampMixin",
    "TokenPermission",
    "UTCDateTime",
    "User",
    "UserRole",
]
