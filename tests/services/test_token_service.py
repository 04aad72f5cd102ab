"""Tests for token service layer functionality."""
import asyncio
import re
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.api_token import ApiToken
from schemas.token import TokenCreate
from services import token_service
from services.exceptions import TokenAccessDeniedError, TokenNotFoundError
from services.token_service import (
    TokenRejection,
    compute_expiration,
    create_token,
    extract_token_prefix,
    generate_token,
    get_all_tokens,
    get_manageable_token,
    get_token_by_hash,
    get_token_rejection,
    get_tokens,
    hash_token,
    ip_allowed,
    is_valid_token_format,
    record_token_use,
    revoke_token,
    verify_token,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


# =============================================================================
# generate_token / hash_token / format
# =============================================================================


def test__generate_token__has_expected_shape() -> None:
    generated = generate_token()

    assert re.fullmatch(r"tk_[0-9a-f]{8}_[0-9a-f]{64}", generated.token)
    assert generated.token_prefix == generated.token[:11]
    assert generated.token_hash == hash_token(generated.token)
    assert len(generated.token_hash) == 64


def test__generate_token__produces_unique_tokens() -> None:
    tokens = {generate_token().token for _ in range(50)}
    assert len(tokens) == 50


def test__generate_token__output_passes_format_check() -> None:
    assert is_valid_token_format(generate_token().token)


def test__hash_token__is_deterministic_and_distinct() -> None:
    token = generate_token().token
    other = generate_token().token

    assert hash_token(token) == hash_token(token)
    assert hash_token(token) != hash_token(other)


def test__hash_token__never_contains_plaintext() -> None:
    token = generate_token().token
    assert token not in hash_token(token)


@pytest.mark.parametrize(
    "token",
    [
        "",
        "tk_",
        "tk_1234567_" + "a" * 64,  # identifier too short
        "tk_12345678_" + "a" * 63,  # secret too short
        "tk_12345678_" + "a" * 65,  # secret too long
        "tk_ABCDEF12_" + "a" * 64,  # uppercase hex
        "bm_12345678_" + "a" * 64,  # wrong tag
        "tk_12345678_" + "g" * 64,  # not hex
        "tk_12345678_" + "a" * 64 + "\n",
    ],
)
def test__is_valid_token_format__rejects_malformed(token: str) -> None:
    assert is_valid_token_format(token) is False


def test__extract_token_prefix__returns_tag_and_identifier() -> None:
    token = "tk_1a2b3c4d_" + "0" * 64
    assert extract_token_prefix(token) == "tk_1a2b3c4d"


def test__extract_token_prefix__none_for_malformed() -> None:
    assert extract_token_prefix("tk_nothex") is None


def test__verify_token__matches_only_own_hash() -> None:
    generated = generate_token()
    assert verify_token(generated.token, generated.token_hash) is True
    assert verify_token(generate_token().token, generated.token_hash) is False


# =============================================================================
# compute_expiration
# =============================================================================


def test__compute_expiration__defaults_to_90_days() -> None:
    assert compute_expiration(None, NOW) == NOW + timedelta(days=90)


def test__compute_expiration__keeps_value_within_cap() -> None:
    requested = NOW + timedelta(days=30)
    assert compute_expiration(requested, NOW) == requested


def test__compute_expiration__caps_at_365_days() -> None:
    requested = NOW + timedelta(days=1000)
    assert compute_expiration(requested, NOW) == NOW + timedelta(days=365)


def test__compute_expiration__treats_naive_as_utc() -> None:
    naive = datetime(2025, 7, 1, 0, 0)
    assert compute_expiration(naive, NOW) == datetime(2025, 7, 1, 0, 0, tzinfo=UTC)


def test__compute_expiration__honors_custom_policy() -> None:
    assert compute_expiration(None, NOW, default_days=7, max_days=30) == NOW + timedelta(days=7)
    assert compute_expiration(None, NOW, default_days=90, max_days=30) == NOW + timedelta(days=30)


# =============================================================================
# ip_allowed / get_token_rejection
# =============================================================================


def test__ip_allowed__exact_match() -> None:
    assert ip_allowed("203.0.113.5", ["198.51.100.1", "203.0.113.5"]) is True


def test__ip_allowed__no_match() -> None:
    assert ip_allowed("203.0.113.6", ["203.0.113.5"]) is False


def test__ip_allowed__normalizes_ipv6() -> None:
    assert ip_allowed("2001:db8::1", ["2001:0db8:0000:0000:0000:0000:0000:0001"]) is True


def test__ip_allowed__ipv4_mapped_client_matches_ipv4_entry() -> None:
    assert ip_allowed("::ffff:203.0.113.5", ["203.0.113.5"]) is True


@pytest.mark.parametrize("client_ip", [None, "", "not-an-ip", "unknown"])
def test__ip_allowed__unknown_client_never_matches(client_ip: str | None) -> None:
    assert ip_allowed(client_ip, ["203.0.113.5"]) is False


def _token(**overrides: object) -> ApiToken:
    values: dict[str, object] = {
        "user_id": 1,
        "name": "t",
        "token_hash": "h",
        "token_prefix": "tk_00000000",
        "permissions": ["read"],
        "expires_at": NOW + timedelta(days=1),
        "is_active": True,
        "revoked_at": None,
        "ip_whitelist": None,
        "rate_limit": 1000,
        "usage_count": 0,
    }
    values.update(overrides)
    return ApiToken(**values)


def test__get_token_rejection__usable_token() -> None:
    assert get_token_rejection(_token(), "203.0.113.5", NOW) is None


def test__get_token_rejection__revoked() -> None:
    api_token = _token(is_active=False, revoked_at=NOW - timedelta(hours=1))
    assert get_token_rejection(api_token, "203.0.113.5", NOW) == TokenRejection.REVOKED


def test__get_token_rejection__inactive_without_revocation_counts_as_revoked() -> None:
    assert get_token_rejection(_token(is_active=False), None, NOW) == TokenRejection.REVOKED


def test__get_token_rejection__expired_at_exact_boundary() -> None:
    api_token = _token(expires_at=NOW)
    assert get_token_rejection(api_token, None, NOW) == TokenRejection.EXPIRED


def test__get_token_rejection__ip_not_in_whitelist() -> None:
    api_token = _token(ip_whitelist=["198.51.100.1"])
    assert get_token_rejection(api_token, "203.0.113.5", NOW) == TokenRejection.IP_NOT_ALLOWED


def test__get_token_rejection__missing_client_ip_with_whitelist() -> None:
    api_token = _token(ip_whitelist=["198.51.100.1"])
    assert get_token_rejection(api_token, None, NOW) == TokenRejection.IP_NOT_ALLOWED


def test__get_token_rejection__empty_whitelist_allows_any_ip() -> None:
    assert get_token_rejection(_token(ip_whitelist=[]), None, NOW) is None


def test__get_token_rejection__revocation_checked_before_expiry() -> None:
    api_token = _token(
        is_active=False,
        revoked_at=NOW - timedelta(days=2),
        expires_at=NOW - timedelta(days=1),
    )
    assert get_token_rejection(api_token, None, NOW) == TokenRejection.REVOKED


# =============================================================================
# create_token
# =============================================================================


async def test__create_token__stores_hash_and_metadata(
    db_session: AsyncSession, make_user,
) -> None:
    user = await make_user()
    data = TokenCreate(name="CRM sync", permissions=["write", "read", "read"])

    api_token, plaintext = await create_token(db_session, user.id, data)

    assert api_token.id is not None
    assert api_token.user_id == user.id
    assert api_token.token_hash == hash_token(plaintext)
    assert api_token.token_prefix == plaintext[:11]
    assert api_token.permissions == ["read", "write"]
    assert api_token.is_active is True
    assert api_token.usage_count == 0
    assert api_token.rate_limit == 1000
    assert api_token.last_used is None
    assert api_token.created_at is not None
    assert plaintext not in (api_token.token_hash, api_token.token_prefix)


async def test__create_token__default_expiry_is_about_90_days(
    db_session: AsyncSession, make_user,
) -> None:
    user = await make_user()
    before = datetime.now(UTC)

    api_token, _ = await create_token(
        db_session, user.id, TokenCreate(name="t", permissions=["read"]),
    )

    expected = before + timedelta(days=90)
    assert abs((api_token.expires_at - expected).total_seconds()) < 60


async def test__create_token__caps_far_future_expiry(
    db_session: AsyncSession, make_user,
) -> None:
    user = await make_user()
    requested = datetime.now(UTC) + timedelta(days=2000)

    api_token, _ = await create_token(
        db_session,
        user.id,
        TokenCreate(name="t", permissions=["read"], expires_at=requested),
    )

    cap = datetime.now(UTC) + timedelta(days=365)
    assert api_token.expires_at <= cap
    assert (cap - api_token.expires_at).total_seconds() < 60


async def test__create_token__custom_rate_limit_and_whitelist(
    db_session: AsyncSession, make_user,
) -> None:
    user = await make_user()
    data = TokenCreate(
        name="t",
        permissions=["read"],
        rate_limit=50,
        ip_whitelist=["203.0.113.5", "2001:0db8::0001"],
    )

    api_token, _ = await create_token(db_session, user.id, data)

    assert api_token.rate_limit == 50
    assert api_token.ip_whitelist == ["203.0.113.5", "2001:db8::1"]


async def test__create_token__policy_overrides(
    db_session: AsyncSession, make_user,
) -> None:
    user = await make_user()

    api_token, _ = await create_token(
        db_session,
        user.id,
        TokenCreate(name="t", permissions=["read"]),
        default_expiry_days=7,
        default_rate_limit=10,
    )

    assert api_token.rate_limit == 10
    assert api_token.expires_at < datetime.now(UTC) + timedelta(days=8)


# =============================================================================
# Lookups
# =============================================================================


async def test__get_token_by_hash__finds_token(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    user = await make_user()
    api_token, plaintext = await make_token(user)

    found = await get_token_by_hash(db_session, hash_token(plaintext))

    assert found is not None
    assert found.id == api_token.id


async def test__get_token_by_hash__unknown_hash(db_session: AsyncSession) -> None:
    assert await get_token_by_hash(db_session, hash_token(generate_token().token)) is None


async def test__get_tokens__only_own_tokens_newest_first(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    alice = await make_user("alice")
    bob = await make_user("bob")
    first, _ = await make_token(alice, name="first")
    second, _ = await make_token(alice, name="second")
    await make_token(bob, name="bobs")

    tokens = await get_tokens(db_session, alice.id)

    assert [t.id for t in tokens] == [second.id, first.id]


async def test__get_all_tokens__spans_users_and_filters_revoked(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    alice = await make_user("alice")
    bob = await make_user("bob")
    alice_token, _ = await make_token(alice)
    bob_token, _ = await make_token(bob)
    await revoke_token(db_session, bob_token.id, revoked_by=alice.id)
    await db_session.commit()

    everything = await get_all_tokens(db_session)
    active = await get_all_tokens(db_session, include_revoked=False)

    assert {t.id for t in everything} == {alice_token.id, bob_token.id}
    assert [t.id for t in active] == [alice_token.id]


async def test__get_manageable_token__owner(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    user = await make_user()
    api_token, _ = await make_token(user)

    found = await get_manageable_token(db_session, api_token.id, user.id)

    assert found.id == api_token.id


async def test__get_manageable_token__other_user_denied(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    owner = await make_user("owner")
    other = await make_user("other")
    api_token, _ = await make_token(owner)

    with pytest.raises(TokenAccessDeniedError):
        await get_manageable_token(db_session, api_token.id, other.id)


async def test__get_manageable_token__super_admin_allowed(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    owner = await make_user("owner")
    admin = await make_user("admin")
    api_token, _ = await make_token(owner)

    found = await get_manageable_token(db_session, api_token.id, admin.id, is_super_admin=True)

    assert found.id == api_token.id


async def test__get_manageable_token__missing(db_session: AsyncSession) -> None:
    with pytest.raises(TokenNotFoundError):
        await get_manageable_token(db_session, 999, 1)


# =============================================================================
# record_token_use
# =============================================================================


async def test__record_token_use__increments_and_stamps(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    user = await make_user()
    api_token, _ = await make_token(user)

    await record_token_use(db_session, api_token.id, NOW)
    await record_token_use(db_session, api_token.id, NOW + timedelta(minutes=1))
    await db_session.commit()
    await db_session.refresh(api_token)

    assert api_token.usage_count == 2
    assert api_token.last_used == NOW + timedelta(minutes=1)


async def test__record_token_use__concurrent_increments_are_not_lost(
    session_factory: async_sessionmaker[AsyncSession], make_user, make_token,
) -> None:
    """Each use runs in its own session, as concurrent requests would."""
    user = await make_user()
    api_token, _ = await make_token(user)

    async def use_once() -> None:
        async with session_factory() as session:
            await record_token_use(session, api_token.id)
            await session.commit()

    await asyncio.gather(*(use_once() for _ in range(20)))

    async with session_factory() as session:
        count = await session.scalar(
            select(ApiToken.usage_count).where(ApiToken.id == api_token.id),
        )
    assert count == 20


# =============================================================================
# revoke_token
# =============================================================================


async def test__revoke_token__sets_revocation_fields(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    owner = await make_user("owner")
    admin = await make_user("admin")
    api_token, _ = await make_token(owner)

    revoked = await revoke_token(db_session, api_token.id, revoked_by=admin.id, now=NOW)
    await db_session.commit()
    await db_session.refresh(api_token)

    assert revoked is True
    assert api_token.is_active is False
    assert api_token.revoked_at == NOW
    assert api_token.revoked_by == admin.id


async def test__revoke_token__is_idempotent(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    user = await make_user()
    api_token, _ = await make_token(user)

    first = await revoke_token(db_session, api_token.id, revoked_by=user.id, now=NOW)
    second = await revoke_token(
        db_session, api_token.id, revoked_by=user.id, now=NOW + timedelta(hours=1),
    )
    await db_session.commit()
    await db_session.refresh(api_token)

    assert first is True
    assert second is False
    assert api_token.revoked_at == NOW


async def test__revoke_token__missing_token(db_session: AsyncSession, make_user) -> None:
    user = await make_user()
    assert await revoke_token(db_session, 12345, revoked_by=user.id) is False


async def test__revoke_token__row_is_kept(
    db_session: AsyncSession, make_user, make_token,
) -> None:
    user = await make_user()
    api_token, _ = await make_token(user)

    await revoke_token(db_session, api_token.id, revoked_by=user.id)
    await db_session.commit()

    assert await token_service.get_token_by_id(db_session, api_token.id) is not None
