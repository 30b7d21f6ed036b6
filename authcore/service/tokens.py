from __future__ import annotations

import random
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

from redis.exceptions import RedisError

from authcore.clock import Clock, from_epoch, to_epoch, utcnow
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    BadSignatureError,
    TokenError,
    TokenRevokedError,
    TokenVersionMismatchError,
)
from authcore.service.signing import TokenCodec, new_jti
from authcore.storage.memory import MemoryStore
from authcore.storage.models import User
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


@dataclass
class AuthContext:
    """Identity resolved from a valid access token."""

    user_id: str
    role: str
    jti: str
    token_version: int
    expires_at: datetime
    session_id: Optional[str] = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_jti: str
    refresh_jti: str
    access_expires_at: datetime
    refresh_expires_at: datetime

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": "bearer",
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


class TokenIssuer:
    """Mints and validates access/refresh tokens bound to the account's token version.

    Bulk invalidation happens by bumping ``User.token_version``; targeted
    revocation (logout, eviction, rotation) goes through a jti denylist
    held in Redis, or in the store when Redis is not configured.
    """

    def __init__(
        self,
        codec: TokenCodec,
        settings: Settings,
        store: MemoryStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        clock: Clock = utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.codec = codec
        self.settings = settings
        self.store = store
        self.cache = cache
        self._clock = clock
        self._rng = rng or secrets.SystemRandom()

    def _base_claims(self, user: User, jti: str, now: datetime, expires_at: datetime, token_type: str) -> dict:
        return {
            "sub": user.id,
            "exp": to_epoch(expires_at),
            "iat": to_epoch(now),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "jti": jti,
            "type": token_type,
            "tokenVersion": user.token_version,
        }

    def mint_pair(self, user: User) -> TokenPair:
        now = self._clock()
        access_expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_expires_at = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        access_jti = new_jti(self._rng)
        refresh_jti = new_jti(self._rng)
        access_claims = self._base_claims(user, access_jti, now, access_expires_at, "access")
        access_claims["role"] = user.role
        refresh_claims = self._base_claims(user, refresh_jti, now, refresh_expires_at, "refresh")
        return TokenPair(
            access_token=self.codec.encode(access_claims),
            refresh_token=self.codec.encode(refresh_claims),
            access_jti=access_jti,
            refresh_jti=refresh_jti,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def decode(self, token: str, expected_type: str) -> dict:
        payload = self.codec.decode(token)
        if payload.get("type") != expected_type:
            raise BadSignatureError(reason="wrong_token_type")
        if not payload.get("jti") or not payload.get("sub"):
            raise BadSignatureError(reason="token_malformed")
        return payload

    def _ttl(self, expires_at: datetime) -> int:
        return int((expires_at - self._clock()).total_seconds()) + 1

    async def revoke_access(self, jti: str, expires_at: datetime) -> None:
        if self.cache:
            try:
                await self.cache.denylist_access_token(jti, self._ttl(expires_at))
                return
            except RedisError as exc:
                logger.warning("access_token_denylist_failed", error=str(exc))
        self.store.denylist_token(jti, expires_at)

    async def revoke_refresh(self, jti: str, expires_at: datetime) -> None:
        if self.cache:
            try:
                await self.cache.mark_refresh_revoked(jti, self._ttl(expires_at))
                return
            except RedisError as exc:
                logger.warning("refresh_token_revoke_failed", error=str(exc))
        self.store.denylist_token(jti, expires_at)

    async def _is_revoked(self, jti: str, *, refresh: bool) -> bool:
        if self.store.is_token_denylisted(jti, self._clock()):
            return True
        if not self.cache:
            return False
        try:
            if refresh:
                return await self.cache.is_refresh_revoked(jti)
            return await self.cache.is_access_token_denylisted(jti)
        except RedisError as exc:
            # Treat as revoked during a Redis outage rather than accept a logged-out token
            logger.warning("token_revocation_check_failed_defaulting_to_revoked", error=str(exc))
            return True

    async def is_refresh_revoked(self, jti: str) -> bool:
        return await self._is_revoked(jti, refresh=True)

    def _check_version(self, user: Optional[User], payload: dict) -> User:
        if user is None:
            raise TokenRevokedError(reason="user_missing")
        if payload.get("tokenVersion") != user.token_version:
            raise TokenVersionMismatchError()
        return user

    async def validate_access(self, token: str) -> AuthContext:
        """Resolve an access token or raise a ``TokenError`` subclass."""
        try:
            payload = self.decode(token, "access")
            if await self._is_revoked(payload["jti"], refresh=False):
                raise TokenRevokedError()
            user = self._check_version(self.store.get_user(payload["sub"]), payload)
        except TokenError as exc:
            logger.info("access_token_rejected", reason=exc.reason)
            raise
        return AuthContext(
            user_id=user.id,
            role=user.role,
            jti=payload["jti"],
            token_version=user.token_version,
            expires_at=from_epoch(payload["exp"]),
        )

    async def validate_refresh(self, token: str) -> tuple[User, dict]:
        payload = self.decode(token, "refresh")
        if await self.is_refresh_revoked(payload["jti"]):
            raise TokenRevokedError()
        user = self._check_version(self.store.get_user(payload["sub"]), payload)
        return user, payload


__all__ = ["AuthContext", "TokenIssuer", "TokenPair"]
