from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for rate limits, MFA lockouts and token revocation."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Lua token bucket: atomic refill + consume
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
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    # Failed MFA attempt: refuse while locked, else count and lock at the cap.
    # Returns {locked, attempts}; attempts is -1 when the lock already existed.
    _MFA_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
if attempts >= tonumber(ARGV[1]) then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._mfa_attempt = self.client.register_script(self._MFA_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate subjects so caller-supplied values cannot inject delimiters."""

        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume from a token bucket; returns (allowed, remaining, reset_seconds)."""

        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return (bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0))

    async def check_mfa_lockout(self, user_id: str) -> int:
        """Seconds left on an MFA lockout, 0 when the user is not locked."""

        ttl = await self.client.ttl(f"mfa:lockout:{user_id}")
        return max(int(ttl or 0), 0)

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        """Atomically record a failed MFA attempt and trigger lockout at the cap."""

        result = await self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        await self.client.delete(f"mfa:attempts:{user_id}")

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=ttl_seconds)

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:refresh:revoked:{jti}"))

    async def revoke_state_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"auth:state:revoked:{jti}", "1", ex=ttl_seconds)

    async def claim_state_token(self, jti: str, ttl_seconds: int) -> bool:
        """Mark ``jti`` revoked only if it is not already; True for the single winner."""
        return bool(
            await self.client.set(f"auth:state:revoked:{jti}", "1", ex=max(ttl_seconds, 1), nx=True)
        )

    async def is_state_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:state:revoked:{jti}"))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._mfa_attempt = self._sync_client.register_script(
            RedisCache._MFA_ATTEMPT_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return (bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0))

    async def check_mfa_lockout(self, user_id: str) -> int:
        ttl = self._sync_client.ttl(f"mfa:lockout:{user_id}")
        return max(int(ttl or 0), 0)

    async def atomic_mfa_attempt(
        self, user_id: str, max_attempts: int, lockout_seconds: int
    ) -> tuple[bool, int]:
        result = self._mfa_attempt(
            keys=[f"mfa:lockout:{user_id}", f"mfa:attempts:{user_id}"],
            args=[max_attempts, lockout_seconds],
        )
        return (bool(int(result[0])), int(result[1]))

    async def clear_mfa_attempts(self, user_id: str) -> None:
        self._sync_client.delete(f"mfa:attempts:{user_id}")

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:access:denylist:{jti}"))

    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"auth:refresh:revoked:{jti}", "1", ex=ttl_seconds)

    async def is_refresh_revoked(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:refresh:revoked:{jti}"))

    async def revoke_state_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"auth:state:revoked:{jti}", "1", ex=ttl_seconds)

    async def claim_state_token(self, jti: str, ttl_seconds: int) -> bool:
        return bool(
            self._sync_client.set(f"auth:state:revoked:{jti}", "1", ex=max(ttl_seconds, 1), nx=True)
        )

    async def is_state_token_revoked(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:state:revoked:{jti}"))

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
