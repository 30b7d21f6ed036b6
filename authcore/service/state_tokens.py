from __future__ import annotations

import random
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional, Union

from redis.exceptions import RedisError

from authcore.clock import Clock, from_epoch, to_epoch, utcnow
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import StateTokenInvalidError, TokenError, TokenExpiredError
from authcore.service.signing import TokenCodec, new_jti
from authcore.storage.memory import MemoryStore
from authcore.storage.models import MFAMethod
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class StatePurpose(str, Enum):
    """The single step a state token lets its bearer take next."""

    AWAITING_MFA_SELECTION = "awaiting_mfa_selection"
    AWAITING_TOTP = "awaiting_totp"
    AWAITING_EMAIL_CODE = "awaiting_email_code"
    AWAITING_RECOVERY_CODE = "awaiting_recovery_code"


PURPOSE_FOR_METHOD = {
    MFAMethod.TOTP: StatePurpose.AWAITING_TOTP,
    MFAMethod.EMAIL: StatePurpose.AWAITING_EMAIL_CODE,
    MFAMethod.RECOVERY_CODE: StatePurpose.AWAITING_RECOVERY_CODE,
}


@dataclass(frozen=True)
class StateClaims:
    user_id: str
    purpose: StatePurpose
    jti: str
    token_version: int
    issued_at: datetime
    expires_at: datetime
    pending_method: Optional[MFAMethod] = None


class StateTokenManager:
    """Short-lived tokens that carry a partially completed sign-in between requests.

    A state token never authorizes resource access: its ``type`` claim is
    ``state`` and access-token validation rejects it. Revocation (selection,
    completion, cancel) is tracked by ``jti`` in Redis, or in the store's
    denylist when Redis is not configured.
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

    def issue(
        self,
        user_id: str,
        purpose: StatePurpose,
        *,
        token_version: int,
        pending_method: Optional[MFAMethod] = None,
    ) -> tuple[str, StateClaims]:
        now = self._clock()
        expires_at = now + timedelta(minutes=self.settings.state_token_ttl_minutes)
        claims = StateClaims(
            user_id=user_id,
            purpose=purpose,
            jti=new_jti(self._rng),
            token_version=token_version,
            issued_at=now,
            expires_at=expires_at,
            pending_method=pending_method,
        )
        payload = {
            "sub": user_id,
            "exp": to_epoch(expires_at),
            "iat": to_epoch(now),
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "jti": claims.jti,
            "type": "state",
            "tokenVersion": token_version,
            "purpose": purpose.value,
        }
        if pending_method is not None:
            payload["pendingMethod"] = pending_method.value
        logger.info("state_token_issued", user_id=user_id, purpose=purpose.value)
        return self.codec.encode(payload), claims

    @staticmethod
    def _claims_from_payload(payload: dict) -> StateClaims:
        try:
            pending = payload.get("pendingMethod")
            return StateClaims(
                user_id=str(payload["sub"]),
                purpose=StatePurpose(payload["purpose"]),
                jti=str(payload["jti"]),
                token_version=int(payload["tokenVersion"]),
                issued_at=from_epoch(payload["iat"]),
                expires_at=from_epoch(payload["exp"]),
                pending_method=MFAMethod(pending) if pending else None,
            )
        except (KeyError, TypeError, ValueError):
            raise StateTokenInvalidError(reason="state_token_malformed") from None

    def _decode(self, token: str, *, verify_exp: bool = True) -> StateClaims:
        try:
            payload = self.codec.decode(token, verify_exp=verify_exp)
        except TokenExpiredError:
            raise StateTokenInvalidError(reason="state_token_expired") from None
        except TokenError as exc:
            raise StateTokenInvalidError(reason=exc.reason) from None
        if payload.get("type") != "state":
            raise StateTokenInvalidError(reason="wrong_token_type")
        return self._claims_from_payload(payload)

    async def is_revoked(self, jti: str) -> bool:
        if self.store.is_token_denylisted(jti, self._clock()):
            return True
        if self.cache:
            try:
                return await self.cache.is_state_token_revoked(jti)
            except RedisError as exc:
                # Refuse rather than accept a possibly cancelled flow
                logger.warning("state_token_revocation_check_failed", error=str(exc))
                return True
        return False

    async def validate(
        self, token: str, *, purposes: Optional[Iterable[StatePurpose]] = None
    ) -> StateClaims:
        """Decode ``token`` and check it is live and scoped to one of ``purposes``."""
        claims = self._decode(token)
        if await self.is_revoked(claims.jti):
            raise StateTokenInvalidError(reason="state_token_revoked")
        if purposes is not None and claims.purpose not in set(purposes):
            logger.warning(
                "state_token_wrong_purpose",
                user_id=claims.user_id,
                purpose=claims.purpose.value,
            )
            raise StateTokenInvalidError(reason="state_token_wrong_purpose")
        return claims

    def _ttl(self, claims: StateClaims) -> int:
        return int((claims.expires_at - self._clock()).total_seconds()) + 1

    async def revoke(self, claims: StateClaims) -> None:
        if self.cache:
            try:
                await self.cache.revoke_state_token(claims.jti, self._ttl(claims))
                return
            except RedisError as exc:
                logger.warning("state_token_revoke_cache_failed", user_id=claims.user_id, error=str(exc))
        self.store.denylist_token(claims.jti, claims.expires_at)

    async def claim(self, claims: StateClaims) -> None:
        """Revoke ``claims`` atomically so only one caller can finish the flow.

        Raises ``StateTokenInvalidError`` when another caller got there first.
        """
        now = self._clock()
        if self.cache:
            try:
                won = await self.cache.claim_state_token(claims.jti, self._ttl(claims))
            except RedisError as exc:
                logger.warning("state_token_claim_cache_failed", user_id=claims.user_id, error=str(exc))
                won = self.store.denylist_token_if_absent(claims.jti, claims.expires_at, now)
        else:
            won = self.store.denylist_token_if_absent(claims.jti, claims.expires_at, now)
        if not won:
            logger.warning("state_token_reused", user_id=claims.user_id, purpose=claims.purpose.value)
            raise StateTokenInvalidError(reason="state_token_revoked")

    async def cancel(self, token: str) -> str:
        """End a pending flow. Returns ``cancelled`` or ``already_expired``."""
        claims = self._decode(token, verify_exp=False)
        if claims.expires_at <= self._clock():
            return "already_expired"
        if await self.is_revoked(claims.jti):
            raise StateTokenInvalidError(reason="state_token_revoked")
        await self.revoke(claims)
        logger.info("state_token_cancelled", user_id=claims.user_id, purpose=claims.purpose.value)
        return "cancelled"


__all__ = ["StatePurpose", "StateClaims", "StateTokenManager", "PURPOSE_FOR_METHOD"]
