"""FastAPI dependencies for injection."""
from core.auth import get_current_identity
from core.config import get_settings
from core.permissions import require_permission, require_roles, require_session_auth
from core.rate_limit_config import RateLimitScope
from core.rate_limiter import rate_limit_by_ip
from db.session import get_async_session

# Per-IP limits: one bucket for the login endpoint, one for everything else.
login_rate_limit = rate_limit_by_ip(RateLimitScope.LOGIN)
api_rate_limit = rate_limit_by_ip(RateLimitScope.API)

__all__ = [
    "api_rate_limit",
    "get_async_session",
    "get_current_identity",
    "get_settings",
    "login_rate_limit",
    "require_permission",
    "require_roles",
    "require_session_auth",
]
