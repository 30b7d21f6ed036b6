from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple, Union

from redis.exceptions import RedisError

from authcore.clock import Clock, utcnow
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import AccountLockedError, RateLimitedError
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

Cache = Union[RedisCache, SyncRedisCache]


class RateLimiter:
    """Token-bucket request throttling keyed by an arbitrary subject (e.g. source IP).

    Redis holds the buckets when available so limits hold across workers;
    otherwise a process-local bucket with the same refill maths is used.
    """

    def __init__(self, cache: Optional[Cache], *, clock: Clock = utcnow) -> None:
        self.cache = cache
        self._clock = clock
        self._local_lock = threading.Lock()
        self._local_buckets: Dict[str, Tuple[float, datetime]] = {}

    def _local_check(self, key: str, limit: int, window_seconds: int, cost: int) -> Tuple[bool, int, int]:
        now = self._clock()
        refill_rate = float(limit) / float(window_seconds)
        with self._local_lock:
            tokens, last_ts = self._local_buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._local_buckets[key] = (tokens, now)
            reset_seconds = 0
            if not allowed:
                reset_seconds = max(int((cost - tokens) / refill_rate + 0.999), 1)
            return allowed, int(tokens), reset_seconds

    async def hit(self, key: str, limit: int, window_seconds: int, *, cost: int = 1) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens; returns (allowed, remaining, reset_seconds)."""
        if limit <= 0:
            return True, limit, 0
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        if self.cache:
            try:
                return await self.cache.check_rate_limit(key, limit, window_seconds, cost=cost)
            except RedisError as exc:
                # Keep limiting locally rather than letting requests through
                logger.warning("rate_limit_cache_failed", key=key, error=str(exc))
        return self._local_check(key, limit, window_seconds, cost)

    async def enforce(self, key: str, limit: int, window_seconds: int) -> None:
        allowed, _, reset_seconds = await self.hit(key, limit, window_seconds)
        if not allowed:
            logger.warning("rate_limited", key=key, retry_after=reset_seconds)
            raise RateLimitedError(retry_after=max(reset_seconds, 1))


class LockoutGuard:
    """Consecutive invalid second-factor submissions per account.

    Separate from the sign-in counter: once ``mfa_max_attempts`` wrong codes
    arrive, every MFA submission for that account is refused until the
    lockout window passes.
    """

    def __init__(self, cache: Optional[Cache], settings: Settings, *, clock: Clock = utcnow) -> None:
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self._state_lock = threading.Lock()
        self._mfa_attempts: Dict[str, int] = {}
        self._mfa_lockouts: Dict[str, datetime] = {}

    @property
    def lockout_seconds(self) -> int:
        return self.settings.mfa_lockout_minutes * 60

    async def retry_after(self, user_id: str) -> int:
        """Seconds left on the lockout, 0 when not locked."""
        if self.cache:
            try:
                return await self.cache.check_mfa_lockout(user_id)
            except RedisError as exc:
                logger.warning("mfa_lockout_check_failed", user_id=user_id, error=str(exc))
                return self.lockout_seconds
        now = self._clock()
        with self._state_lock:
            locked_until = self._mfa_lockouts.get(user_id)
            if locked_until and locked_until > now:
                return max(int((locked_until - now).total_seconds() + 0.999), 1)
            if locked_until:
                self._mfa_lockouts.pop(user_id, None)
        return 0

    async def ensure_not_locked(self, user_id: str) -> None:
        wait = await self.retry_after(user_id)
        if wait > 0:
            logger.warning("mfa_locked_out", user_id=user_id, retry_after=wait)
            raise AccountLockedError(retry_after=wait)

    async def record_failure(self, user_id: str) -> int:
        """Count a wrong code. Returns attempts left, or raises once locked."""
        max_attempts = self.settings.mfa_max_attempts
        if self.cache:
            is_locked, attempts = await self.cache.atomic_mfa_attempt(
                user_id, max_attempts, self.lockout_seconds
            )
        else:
            now = self._clock()
            with self._state_lock:
                locked_until = self._mfa_lockouts.get(user_id)
                if locked_until and locked_until > now:
                    is_locked, attempts = True, -1
                else:
                    attempts = self._mfa_attempts.get(user_id, 0) + 1
                    is_locked = attempts >= max_attempts
                    if is_locked:
                        self._mfa_lockouts[user_id] = now + timedelta(seconds=self.lockout_seconds)
                        self._mfa_attempts.pop(user_id, None)
                    else:
                        self._mfa_attempts[user_id] = attempts
        if is_locked:
            if attempts >= 0:
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)
            raise AccountLockedError(retry_after=self.lockout_seconds)
        return max(max_attempts - attempts, 0)

    async def clear(self, user_id: str) -> None:
        if self.cache:
            try:
                await self.cache.clear_mfa_attempts(user_id)
            except RedisError as exc:
                # The counter expires on its own; the verified request still succeeds
                logger.warning("mfa_attempts_clear_failed", user_id=user_id, error=str(exc))
            return
        with self._state_lock:
            self._mfa_attempts.pop(user_id, None)


__all__ = ["RateLimiter", "LockoutGuard"]
