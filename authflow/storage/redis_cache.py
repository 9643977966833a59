from __future__ import annotations

import hashlib
import time
from typing import Any, Awaitable, Optional, Protocol, Tuple, Union

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from authflow.logging import get_logger
from authflow.storage.errors import EphemeralStoreUnavailable


class EphemeralStore(Protocol):
    """Keyed string store with per-key expiry.

    Every call takes ``critical``. A critical call that cannot reach the
    backend raises :class:`EphemeralStoreUnavailable`; a non-critical call
    logs the failure and returns the same value an absent key would.
    """

    async def get(self, key: str, *, critical: bool = False) -> Optional[str]: ...

    async def set_with_ttl(
        self, key: str, value: str, ttl_seconds: int, *, critical: bool = False
    ) -> None: ...

    async def set_if_absent(
        self, key: str, value: str, ttl_seconds: int, *, critical: bool = False
    ) -> bool: ...

    async def delete(self, *keys: str, critical: bool = False) -> int: ...

    async def delete_if_equals(self, key: str, value: str, *, critical: bool = False) -> bool: ...

    async def exists(self, key: str, *, critical: bool = False) -> int: ...

    async def increment(self, key: str, *, critical: bool = False) -> int: ...

    async def increment_with_window(
        self, key: str, window_seconds: int, *, critical: bool = False
    ) -> int: ...

    async def set_expiry(self, key: str, seconds: int, *, critical: bool = False) -> bool: ...

    async def remaining_ttl(self, key: str, *, critical: bool = False) -> int: ...

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, return_remaining: bool = False
    ) -> Union[bool, Tuple[bool, int, int]]: ...

    async def close(self) -> None: ...


def key_family(key: str) -> str:
    """Return the non-identifying prefix of a key for logging."""
    return key.split(":", 1)[0]


class RedisCache:
    """Thin Redis wrapper for OTPs, cooldowns, counters and rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Lua token bucket script: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # INCR and start the window on the first increment in one round trip, so a
    # crash between the two commands cannot leave a counter without expiry.
    _INCREMENT_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    # Compare-and-delete so only one holder of a single-use value can consume it
    _DELETE_IF_EQUALS_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._increment_window = self.client.register_script(self._INCREMENT_WINDOW_SCRIPT)
        self._delete_if_equals = self.client.register_script(self._DELETE_IF_EQUALS_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _guard(
        self,
        operation: str,
        key: str,
        call: Awaitable[Any],
        *,
        critical: bool,
        default: Any,
    ) -> Any:
        try:
            return await call
        except RedisError as exc:
            if critical:
                self.logger.error(
                    "ephemeral_store_unavailable",
                    operation=operation,
                    key_family=key_family(key),
                    error=str(exc),
                )
                raise EphemeralStoreUnavailable(operation, key, exc) from exc
            self.logger.warning(
                "ephemeral_store_degraded",
                operation=operation,
                key_family=key_family(key),
                error=str(exc),
            )
            return default

    async def get(self, key: str, *, critical: bool = False) -> Optional[str]:
        return await self._guard(
            "get", key, self.client.get(key), critical=critical, default=None
        )

    async def set_with_ttl(
        self, key: str, value: str, ttl_seconds: int, *, critical: bool = False
    ) -> None:
        await self._guard(
            "set_with_ttl",
            key,
            self.client.set(key, value, ex=max(1, int(ttl_seconds))),
            critical=critical,
            default=None,
        )

    async def set_if_absent(
        self, key: str, value: str, ttl_seconds: int, *, critical: bool = False
    ) -> bool:
        result = await self._guard(
            "set_if_absent",
            key,
            self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True),
            critical=critical,
            default=False,
        )
        return bool(result)

    async def delete(self, *keys: str, critical: bool = False) -> int:
        if not keys:
            return 0
        result = await self._guard(
            "delete", keys[0], self.client.delete(*keys), critical=critical, default=0
        )
        return int(result or 0)

    async def delete_if_equals(self, key: str, value: str, *, critical: bool = False) -> bool:
        result = await self._guard(
            "delete_if_equals",
            key,
            self._delete_if_equals(keys=[key], args=[value]),
            critical=critical,
            default=0,
        )
        return bool(result)

    async def exists(self, key: str, *, critical: bool = False) -> int:
        result = await self._guard(
            "exists", key, self.client.exists(key), critical=critical, default=0
        )
        return 1 if result else 0

    async def increment(self, key: str, *, critical: bool = False) -> int:
        result = await self._guard(
            "increment", key, self.client.incr(key), critical=critical, default=0
        )
        return int(result or 0)

    async def increment_with_window(
        self, key: str, window_seconds: int, *, critical: bool = False
    ) -> int:
        result = await self._guard(
            "increment_with_window",
            key,
            self._increment_window(keys=[key], args=[max(1, int(window_seconds))]),
            critical=critical,
            default=0,
        )
        return int(result or 0)

    async def set_expiry(self, key: str, seconds: int, *, critical: bool = False) -> bool:
        result = await self._guard(
            "set_expiry",
            key,
            self.client.expire(key, max(1, int(seconds))),
            critical=critical,
            default=False,
        )
        return bool(result)

    async def remaining_ttl(self, key: str, *, critical: bool = False) -> int:
        """Seconds left on ``key``; -1 when it has no expiry, -2 when absent."""
        result = await self._guard(
            "remaining_ttl", key, self.client.ttl(key), critical=critical, default=-2
        )
        return int(result)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate limit subjects so emails and IPs never appear in key names."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate-limit:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket.

        Rate limiting is an abuse brake rather than a security decision, so
        an unreachable backend lets the request through.
        """

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        try:
            allowed, tokens, reset_after = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )
        except RedisError as exc:
            self.logger.warning("rate_limit_check_degraded", error=str(exc))
            if return_remaining:
                return (True, limit, 0)
            return True

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
