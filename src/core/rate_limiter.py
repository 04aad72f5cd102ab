"""
Fixed-window rate limiting enforcement.

This module contains the enforcement logic - the "how" of rate limiting.
For configuration (limits, scopes), see rate_limit_config.py.

Counters live in a FixedWindowStore. The in-memory store is the default and
only works for a single process; when Redis is configured the application
swaps in RedisFixedWindowStore at startup so every instance shares counters.
"""
import logging
import math
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from fastapi import Depends, Request

from core.config import Settings, get_settings
from core.rate_limit_config import (
    RateLimitConfig,
    RateLimitExceededError,
    RateLimitResult,
    RateLimitScope,
    get_ip_rate_limit,
)
from core.redis import RedisClient
from core.request_context import get_client_ip

logger = logging.getLogger(__name__)


class FixedWindowStore(ABC):
    """Counter store: count a hit against a key and report the window state."""

    @abstractmethod
    async def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitResult:
        """Record one request for `key` and return whether it is allowed."""


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryFixedWindowStore(FixedWindowStore):
    """
    Process-local counters keyed by string.

    A window opens on the first hit for a key and lasts `window_seconds`; once
    it has passed, the next hit opens a fresh window. Denied requests do not
    extend the count.
    """

    # Sweep expired windows once the table grows past this many keys.
    PRUNE_THRESHOLD = 10_000

    def __init__(self) -> None:
        self._windows: dict[str, _Window] = {}

    async def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitResult:
        if len(self._windows) > self.PRUNE_THRESHOLD:
            self.prune(now)

        window = self._windows.get(key)
        if window is None or now >= window.reset_at:
            window = _Window(count=1, reset_at=now + config.window_seconds)
            self._windows[key] = window
            return RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=max(0, config.max_requests - 1),
                reset=int(window.reset_at),
                retry_after=0,
            )

        if window.count >= config.max_requests:
            return RateLimitResult(
                allowed=False,
                limit=config.max_requests,
                remaining=0,
                reset=int(window.reset_at),
                retry_after=max(1, math.ceil(window.reset_at - now)),
            )

        window.count += 1
        return RateLimitResult(
            allowed=True,
            limit=config.max_requests,
            remaining=config.max_requests - window.count,
            reset=int(window.reset_at),
            retry_after=0,
        )

    def prune(self, now: float) -> None:
        """Drop windows that have already closed."""
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]


class RedisFixedWindowStore(FixedWindowStore):
    """Counters shared across instances via the fixed window Lua script."""

    def __init__(self, redis_client: RedisClient) -> None:
        self._redis = redis_client

    async def hit(self, key: str, config: RateLimitConfig, now: float) -> RateLimitResult:
        result = await self._redis.eval_fixed_window(
            key=key,
            max_requests=config.max_requests,
            window_seconds=config.window_seconds,
        )
        if result is None:
            # Redis unavailable - fail open
            logger.warning("redis_unavailable", extra={"operation": "rate_limit"})
            return RateLimitResult(
                allowed=True,
                limit=config.max_requests,
                remaining=config.max_requests,
                reset=0,
                retry_after=0,
            )

        allowed, remaining, ttl, retry_after = result
        now_int = int(now)
        return RateLimitResult(
            allowed=bool(allowed),
            limit=config.max_requests,
            remaining=max(0, remaining),
            reset=now_int + ttl if ttl > 0 else now_int + config.window_seconds,
            retry_after=max(0, retry_after) if not allowed else 0,
        )


class _StoreState:
    """Container for the global rate limit store."""

    store: FixedWindowStore | None = None


_state = _StoreState()


def get_rate_limit_store() -> FixedWindowStore:
    """Get the active store, creating the in-memory default on first use."""
    if _state.store is None:
        _state.store = InMemoryFixedWindowStore()
    return _state.store


def set_rate_limit_store(store: FixedWindowStore | None) -> None:
    """Replace the active store. None resets to the in-memory default."""
    _state.store = store


async def check_rate_limit(
    key: str,
    config: RateLimitConfig,
    now: float | None = None,
) -> RateLimitResult:
    """Count a request against `key` and return full rate limit info."""
    if now is None:
        now = time.time()
    result = await get_rate_limit_store().hit(key, config, now)
    if not result.allowed:
        logger.warning(
            "rate_limit_exceeded",
            extra={
                "key": key,
                "limit": config.max_requests,
                "window_seconds": config.window_seconds,
            },
        )
    return result


async def enforce_rate_limit(
    key: str,
    config: RateLimitConfig,
    now: float | None = None,
) -> RateLimitResult:
    """
    Like check_rate_limit, but raise when the request is over the limit.

    Raises:
        RateLimitExceededError: The window for `key` is exhausted.
    """
    result = await check_rate_limit(key, config, now)
    if not result.allowed:
        raise RateLimitExceededError(result)
    return result


def rate_limit_key(scope: RateLimitScope, identifier: str) -> str:
    """Storage key for a scope/identifier pair."""
    return f"rate:{scope.value}:{identifier}"


def rate_limit_by_ip(scope: RateLimitScope) -> Callable[..., Awaitable[None]]:
    """
    Build a dependency enforcing the per-IP limit for `scope`.

    Stores the result on request.state.rate_limit_info for response headers.
    Requests without a known client address share the "unknown" bucket.
    """

    async def dependency(
        request: Request,
        settings: Settings = Depends(get_settings),
    ) -> None:
        config = get_ip_rate_limit(scope, settings)
        client_ip = get_client_ip(request) or "unknown"
        result = await enforce_rate_limit(rate_limit_key(scope, client_ip), config)
        request.state.rate_limit_info = {
            "limit": result.limit,
            "remaining": result.remaining,
            "reset": result.reset,
        }

    return dependency
