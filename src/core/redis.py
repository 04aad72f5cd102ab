"""
Shared counter backend for rate limiting.

When several API instances run behind a load balancer, per-IP and per-token
counters have to live outside the process. RedisClient owns the connection
pool and a single server-side script implementing the fixed window; the
RedisFixedWindowStore in rate_limiter.py is its only consumer. Every failure
degrades to "no answer" (None) and the store decides to fail open.
"""
import logging

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import NoScriptError, RedisError

logger = logging.getLogger(__name__)

# KEYS[1] = bucket, ARGV[1] = limit, ARGV[2] = window seconds.
# Returns {allowed, remaining, ttl, retry_after}. A full bucket is reported
# without incrementing, matching InMemoryFixedWindowStore: denied hits are
# not counted.
FIXED_WINDOW_SCRIPT = """
local bucket = KEYS[1]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])

local used = tonumber(redis.call('GET', bucket) or '0')
if used >= limit then
    local ttl = redis.call('TTL', bucket)
    return {0, 0, ttl, ttl}
end

used = redis.call('INCR', bucket)
if used == 1 then
    redis.call('EXPIRE', bucket, window)
end
return {1, limit - used, redis.call('TTL', bucket), 0}
"""


class RedisClient:
    """
    Connection pool plus the fixed window script, loaded once per connection.

    Disabled or unreachable Redis leaves the client disconnected; the
    application then keeps its counters in memory.
    """

    def __init__(self, url: str, enabled: bool = True, pool_size: int = 20) -> None:
        self._url = url
        self._enabled = enabled
        self._pool_size = pool_size
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = None
        self._fixed_window_sha: str | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the pool, verify the server answers and register the script."""
        if not self._enabled:
            logger.info("Redis disabled; rate limit counters stay in memory")
            return
        try:
            self._pool = ConnectionPool.from_url(self._url, max_connections=self._pool_size)
            self._client = Redis(connection_pool=self._pool)
            await self._client.ping()
            await self._load_scripts()
        except RedisError as e:
            logger.warning("Redis unreachable, rate limit counters stay in memory: %s", e)
            self._client = None
            self._pool = None
            return
        logger.info("Redis rate limit store connected")

    async def _load_scripts(self) -> None:
        try:
            self._fixed_window_sha = await self._client.script_load(FIXED_WINDOW_SCRIPT)
        except RedisError as e:
            logger.warning("Could not register fixed window script: %s", e)
            self._fixed_window_sha = None

    async def close(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        self._pool = None
        logger.info("Redis rate limit store closed")

    async def ping(self) -> bool:
        """Liveness for the health endpoint."""
        if self._client is None:
            return False
        try:
            return await self._client.ping()
        except RedisError:
            return False

    async def eval_fixed_window(
        self,
        key: str,
        max_requests: int,
        window_seconds: int,
    ) -> list[int] | None:
        """
        Count one hit against `key`.

        Returns [allowed, remaining, ttl, retry_after], or None when Redis
        cannot answer. A server that lost the script (restart, SCRIPT FLUSH)
        gets it re-registered and the hit is retried once.
        """
        if self._client is None or self._fixed_window_sha is None:
            return None

        try:
            return await self._evalsha(key, max_requests, window_seconds)
        except NoScriptError:
            logger.warning("redis_script_reload", extra={"script": "fixed_window"})
        except RedisError as e:
            logger.warning("Fixed window hit failed for %s: %s", key, e)
            return None

        await self._load_scripts()
        if self._fixed_window_sha is None:
            return None
        try:
            return await self._evalsha(key, max_requests, window_seconds)
        except RedisError as e:
            logger.warning("Fixed window hit failed after script reload for %s: %s", key, e)
            return None

    async def _evalsha(self, key: str, max_requests: int, window_seconds: int) -> list[int]:
        return await self._client.evalsha(
            self._fixed_window_sha, 1, key, max_requests, window_seconds,
        )


class _RedisState:
    client: RedisClient | None = None


_state = _RedisState()


def get_redis_client() -> RedisClient | None:
    """The client installed at startup, if any."""
    return _state.client


def set_redis_client(client: RedisClient | None) -> None:
    _state.client = client
