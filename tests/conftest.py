"""Pytest fixtures for testing."""
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from core.config import Settings
from core.rate_limiter import set_rate_limit_store
from models.api_token import ApiToken
from models.base import Base
from models.user import User, UserRole
from schemas.token import TokenCreate
from services import token_service, user_service

TEST_PASSWORD = "correct-horse-battery"

UserFactory = Callable[..., Awaitable[User]]
TokenFactory = Callable[..., Awaitable[tuple[ApiToken, str]]]


@pytest.fixture(autouse=True)
def fast_password_hashing(monkeypatch: pytest.MonkeyPatch) -> None:
    """Minimum bcrypt cost keeps user fixtures fast."""
    monkeypatch.setattr(user_service, "BCRYPT_ROUNDS", 4)


@pytest.fixture(autouse=True)
def reset_rate_limit_store() -> Generator[None, None, None]:
    """Each test starts with empty in-memory rate limit counters."""
    set_rate_limit_store(None)
    yield
    set_rate_limit_store(None)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """File-backed SQLite database, one per test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest.fixture
def settings(database_url: str) -> Settings:
    """Deterministic settings, independent of any local .env file."""
    return Settings(
        _env_file=None,
        database_url=database_url,
        jwt_secret="test-secret-key-that-is-long-enough-for-hs256-signing",
        redis_enabled=False,
    )


@pytest.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Create an async engine with a fresh schema."""
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Session used by tests to arrange and inspect data."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_user(db_session: AsyncSession) -> UserFactory:
    """Factory creating committed users."""

    async def _make(
        username: str = "alice",
        *,
        role: UserRole = UserRole.MANAGER,
        password: str = TEST_PASSWORD,
        is_active: bool = True,
    ) -> User:
        user = User(
            username=username,
            password_hash=user_service.hash_password(password),
            role=role.value,
            is_active=is_active,
            failed_login_attempts=0,
        )
        db_session.add(user)
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def make_token(db_session: AsyncSession) -> TokenFactory:
    """Factory creating committed API tokens; returns (row, plaintext)."""

    async def _make(
        user: User,
        *,
        name: str = "Test token",
        permissions: tuple[str, ...] = ("read",),
        ip_whitelist: list[str] | None = None,
        rate_limit: int | None = None,
    ) -> tuple[ApiToken, str]:
        data = TokenCreate(
            name=name,
            permissions=list(permissions),
            ip_whitelist=ip_whitelist,
            rate_limit=rate_limit,
        )
        api_token, plaintext = await token_service.create_token(db_session, user.id, data)
        await db_session.commit()
        return api_token, plaintext

    return _make

