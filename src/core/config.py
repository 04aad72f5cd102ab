"""Application configuration using pydantic-settings."""
import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./flowercraft.db",
        validation_alias="DATABASE_URL",
    )

    # Session tokens (JWT). An unset secret gets a random per-process value,
    # which invalidates all session tokens on restart.
    jwt_secret: str = Field(default="", validation_alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
    jwt_expires_minutes: int = Field(default=240, validation_alias="JWT_EXPIRES_MINUTES")

    # API tokens
    token_default_expiry_days: int = Field(
        default=90, validation_alias="TOKEN_DEFAULT_EXPIRY_DAYS",
    )
    token_max_expiry_days: int = Field(default=365, validation_alias="TOKEN_MAX_EXPIRY_DAYS")
    token_default_rate_limit: int = Field(
        default=1000, validation_alias="TOKEN_DEFAULT_RATE_LIMIT",
    )

    # Login protection
    max_failed_logins: int = Field(default=5, validation_alias="MAX_FAILED_LOGINS")
    account_lockout_minutes: int = Field(
        default=30, validation_alias="ACCOUNT_LOCKOUT_MINUTES",
    )

    # IP-keyed fixed-window rate limits
    login_rate_limit: int = Field(default=10, validation_alias="LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = Field(
        default=900, validation_alias="LOGIN_RATE_WINDOW_SECONDS",
    )
    api_rate_limit: int = Field(default=100, validation_alias="API_RATE_LIMIT")
    api_rate_window_seconds: int = Field(
        default=900, validation_alias="API_RATE_WINDOW_SECONDS",
    )

    # Redis - optional shared store for rate limit counters
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    redis_enabled: bool = Field(default=False, validation_alias="REDIS_ENABLED")
    redis_pool_size: int = Field(default=20, validation_alias="REDIS_POOL_SIZE")

    # CORS - comma-separated list of allowed origins (stored as string, parsed via property)
    cors_origins_str: str = Field(
        default="http://localhost:5000",
        validation_alias="CORS_ORIGINS",
    )

    # Bootstrap account created on startup when no "root" user exists
    root_password: str = Field(default="", validation_alias="ROOT_PASSWORD")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    @model_validator(mode="after")
    def ensure_jwt_secret(self) -> "Settings":
        """Generate a process-local JWT secret when none is configured."""
        if not self.jwt_secret:
            logger.warning(
                "JWT_SECRET is not set; using a random secret. "
                "Session tokens will not survive a restart.",
            )
            self.jwt_secret = secrets.token_hex(64)
        return self

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins string into a list."""
        if not self.cors_origins_str:
            return []
        return [origin.strip() for origin in self.cors_origins_str.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
