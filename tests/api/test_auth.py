"""Tests for login and identity endpoints."""
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.security_log import SecurityLog
from models.user import UserRole

PASSWORD = "correct-horse-battery"


async def _login(client: AsyncClient, username: str, password: str):
    return await client.post("/auth/login", json={"username": username, "password": password})


# =============================================================================
# POST /auth/login
# =============================================================================


async def test_login_success(client: AsyncClient, make_user) -> None:
    user = await make_user("dana", password=PASSWORD)

    response = await _login(client, "dana", PASSWORD)

    assert response.status_code == 200
    data = response.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 240 * 60
    assert data["user"]["id"] == user.id
    assert data["user"]["role"] == "manager"
    assert "password_hash" not in data["user"]

    me = await client.get(
        "/auth/me", headers={"Authorization": f"Bearer {data['access_token']}"},
    )
    assert me.status_code == 200
    assert me.json()["auth_type"] == "session"


async def test_login_failures_share_one_response(client: AsyncClient, make_user) -> None:
    """Unknown user, wrong password and inactive account look the same."""
    await make_user("dana", password=PASSWORD)
    await make_user("gone", password=PASSWORD, is_active=False)

    responses = [
        await _login(client, "nobody", PASSWORD),
        await _login(client, "dana", "wrong-password"),
        await _login(client, "gone", PASSWORD),
    ]

    for response in responses:
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid credentials"


async def test_login_lockout_after_repeated_failures(
    client: AsyncClient, db_session: AsyncSession, make_user,
) -> None:
    user = await make_user("dana", password=PASSWORD)

    for _ in range(5):
        response = await _login(client, "dana", "wrong-password")
        assert response.status_code == 401

    locked = await _login(client, "dana", PASSWORD)

    assert locked.status_code == 401
    assert locked.json()["detail"] == "Account is locked due to multiple failed attempts"
    await db_session.refresh(user)
    assert user.failed_login_attempts == 5
    assert user.account_locked_until is not None
    events = (await db_session.execute(select(SecurityLog.event))).scalars().all()
    assert "account_locked_max_attempts" in events
    assert "login_attempt_locked_account" in events


async def test_login_rate_limited_per_ip(client: AsyncClient) -> None:
    for _ in range(10):
        response = await _login(client, "nobody", "whatever")
        assert response.status_code == 401

    limited = await _login(client, "nobody", "whatever")

    assert limited.status_code == 429
    assert int(limited.headers["Retry-After"]) > 0
    assert limited.headers["X-RateLimit-Limit"] == "10"
    assert limited.headers["X-RateLimit-Remaining"] == "0"


async def test_login_validates_body(client: AsyncClient) -> None:
    response = await client.post("/auth/login", json={"username": "", "password": "x"})

    assert response.status_code == 422


# =============================================================================
# GET /auth/me
# =============================================================================


async def test_me_with_session(client: AsyncClient, make_user, auth_headers) -> None:
    user = await make_user("root", role=UserRole.SUPER_ADMIN)

    response = await client.get("/auth/me", headers=auth_headers(user))

    assert response.status_code == 200
    data = response.json()
    assert data["user"]["username"] == "root"
    assert data["auth_type"] == "session"
    assert data["token_prefix"] is None
    assert data["permissions"] == ["read", "write", "admin"]


async def test_me_with_api_token(client: AsyncClient, make_user, make_token) -> None:
    user = await make_user()
    api_token, plaintext = await make_token(user, permissions=("read", "write"))

    response = await client.get("/auth/me", headers={"Authorization": f"Bearer {plaintext}"})

    assert response.status_code == 200
    data = response.json()
    assert data["auth_type"] == "api_token"
    assert data["token_prefix"] == api_token.token_prefix
    assert data["permissions"] == ["read", "write"]


async def test_me_token_without_read_forbidden(
    client: AsyncClient, make_user, make_token,
) -> None:
    user = await make_user()
    _, plaintext = await make_token(user, permissions=("write",))

    response = await client.get("/auth/me", headers={"Authorization": f"Bearer {plaintext}"})

    assert response.status_code == 403
    assert response.json()["detail"] == "Insufficient permissions"


async def test_me_without_credentials(client: AsyncClient) -> None:
    response = await client.get("/auth/me")

    assert response.status_code == 401
    assert response.json()["detail"] == "Not authenticated"


async def test_me_with_garbage_session_token(client: AsyncClient) -> None:
    response = await client.get("/auth/me", headers={"Authorization": "Bearer not.a.jwt"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid or expired token"


async def test_me_sets_rate_limit_headers(
    client: AsyncClient, make_user, auth_headers,
) -> None:
    user = await make_user()

    response = await client.get("/auth/me", headers=auth_headers(user))

    assert response.headers["X-RateLimit-Limit"] == "100"
    assert response.headers["X-RateLimit-Remaining"] == "99"
    assert "X-RateLimit-Reset" in response.headers


async def test_me_token_without_read_still_records_use(
    client: AsyncClient, db_session: AsyncSession, make_user, make_token,
) -> None:
    """The token authenticated before the gate refused it: that use is kept."""
    user = await make_user()
    api_token, plaintext = await make_token(user, permissions=("write",))

    response = await client.get("/auth/me", headers={"Authorization": f"Bearer {plaintext}"})

    assert response.status_code == 403
    await db_session.refresh(api_token)
    assert api_token.usage_count == 1
    assert api_token.last_used is not None
    entries = (
        await db_session.execute(select(SecurityLog).order_by(SecurityLog.id))
    ).scalars().all()
    assert [e.event for e in entries] == ["token_used", "unauthorized_access"]
    assert entries[1].token_prefix == api_token.token_prefix
    assert "read required" in entries[1].details
