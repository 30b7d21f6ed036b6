from __future__ import annotations

import hashlib
import hmac
import random
import secrets
import string
import uuid
from datetime import timedelta
from typing import Optional

from authcore.clock import Clock, utcnow
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import InvalidCodeError, RateLimitedError
from authcore.storage.memory import MemoryStore
from authcore.storage.models import CodePurpose, RecoveryCode, SecretCode

logger = get_logger(__name__)

_RECOVERY_ALPHABET = string.ascii_lowercase + string.digits
_RECOVERY_GROUPS = 4
_RECOVERY_GROUP_LEN = 4


def normalize_recovery_code(code: str) -> str:
    return "".join(ch for ch in (code or "").lower() if ch not in "- \t")


class SecretCodeService:
    """Issues and verifies emailed one-time codes and recovery codes.

    Only keyed HMAC digests are stored. A new code for a purpose replaces
    the previous one, so each account has at most one live code per purpose.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        clock: Clock = utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._rng = rng or secrets.SystemRandom()
        self._key = settings.jwt_secret.encode()

    def hash_code(self, code: str) -> str:
        return hmac.new(self._key, code.encode(), hashlib.sha256).hexdigest()

    def ttl_for(self, purpose: CodePurpose) -> int:
        if purpose == CodePurpose.PASSWORD_RESET:
            return self.settings.password_reset_code_ttl_seconds
        return self.settings.secret_code_ttl_seconds

    def visible_attempts(self, remaining: int) -> Optional[int]:
        """Only surface the remaining count once it is low."""
        if remaining <= self.settings.attempts_visibility_threshold:
            return remaining
        return None

    def _generate_numeric(self) -> str:
        return "".join(
            str(self._rng.randrange(10)) for _ in range(self.settings.secret_code_length)
        )

    def cooldown_remaining(self, user_id: str, purpose: CodePurpose) -> int:
        """Seconds before another code may be sent for ``purpose``."""
        row = self.store.get_secret_code(user_id, purpose)
        now = self._clock()
        if not row or row.consumed_at is not None or row.is_expired(now):
            return 0
        elapsed = (now - row.created_at).total_seconds()
        return max(int(self.settings.code_resend_cooldown_seconds - elapsed + 0.999), 0)

    def issue(self, user_id: str, purpose: CodePurpose) -> str:
        """Generate and store a fresh code; the cleartext goes to the caller for delivery."""
        wait = self.cooldown_remaining(user_id, purpose)
        if wait > 0:
            logger.info("secret_code_cooldown", user_id=user_id, purpose=purpose.value, retry_after=wait)
            raise RateLimitedError("please wait before requesting another code", retry_after=wait)
        code = self._generate_numeric()
        row = SecretCode.new(
            user_id,
            purpose,
            self.hash_code(code),
            now=self._clock(),
            ttl_seconds=self.ttl_for(purpose),
        )
        self.store.upsert_secret_code(row)
        logger.info("secret_code_issued", user_id=user_id, purpose=purpose.value)
        return code

    def check(self, user_id: str, purpose: CodePurpose, submitted: str) -> SecretCode:
        """Match ``submitted`` against the live code without consuming it.

        Mismatches still count against the code's attempt budget.
        """
        now = self._clock()
        row = self.store.get_secret_code(user_id, purpose)
        if not row:
            raise InvalidCodeError(reason="code_not_found")
        if row.is_expired(now):
            self.store.delete_secret_code(user_id, purpose)
            raise InvalidCodeError(reason="code_expired")
        candidate = self.hash_code((submitted or "").strip())
        if not hmac.compare_digest(candidate, row.code_hash):
            remaining = self.store.register_secret_code_failure(
                row.id, self.settings.secret_code_max_attempts
            )
            logger.warning(
                "secret_code_mismatch",
                user_id=user_id,
                purpose=purpose.value,
                attempts_remaining=remaining,
            )
            raise InvalidCodeError(
                reason="code_mismatch", attempts_remaining=self.visible_attempts(remaining)
            )
        return row

    def consume(self, row: SecretCode) -> None:
        if not self.store.consume_secret_code(row.id, self._clock()):
            raise InvalidCodeError(reason="code_already_used")
        logger.info("secret_code_consumed", user_id=row.user_id, purpose=row.purpose.value)

    def verify(self, user_id: str, purpose: CodePurpose, submitted: str) -> None:
        """Consume the live code for ``purpose`` or raise ``InvalidCodeError``."""
        self.consume(self.check(user_id, purpose, submitted))

    # recovery codes
    def _generate_recovery_code(self) -> str:
        groups = [
            "".join(self._rng.choice(_RECOVERY_ALPHABET) for _ in range(_RECOVERY_GROUP_LEN))
            for _ in range(_RECOVERY_GROUPS)
        ]
        return "-".join(groups)

    def generate_recovery_codes(self, user_id: str) -> list[str]:
        """Replace the whole batch atomically and return the new cleartext codes."""
        now = self._clock()
        expires_at = now + timedelta(days=self.settings.recovery_code_validity_days)
        codes = [self._generate_recovery_code() for _ in range(self.settings.recovery_code_count)]
        rows = [
            RecoveryCode(
                id=str(uuid.uuid4()),
                user_id=user_id,
                code_hash=self.hash_code(normalize_recovery_code(code)),
                created_at=now,
                expires_at=expires_at,
            )
            for code in codes
        ]
        self.store.replace_recovery_codes(user_id, rows)
        logger.info("recovery_codes_generated", user_id=user_id, count=len(rows))
        return codes

    def consume_recovery_code(self, user_id: str, submitted: str) -> bool:
        now = self._clock()
        candidate = self.hash_code(normalize_recovery_code(submitted))
        matched: Optional[RecoveryCode] = None
        # Compare against every usable code so timing does not leak the position
        for row in self.store.list_recovery_codes(user_id):
            if hmac.compare_digest(candidate, row.code_hash) and row.is_usable(now):
                matched = row
        if matched is None:
            return False
        if not self.store.use_recovery_code(matched.id, now):
            logger.warning("recovery_code_reuse", user_id=user_id)
            return False
        logger.info("recovery_code_used", user_id=user_id)
        return True

    def recovery_code_status(self, user_id: str) -> dict:
        now = self._clock()
        rows = self.store.list_recovery_codes(user_id)
        usable = [row for row in rows if row.is_usable(now)]
        expires_at = min((row.expires_at for row in usable), default=None)
        return {
            "total": len(rows),
            "remaining": len(usable),
            "expires_at": expires_at,
            "should_regenerate": len(usable) <= self.settings.recovery_code_low_watermark,
        }

    def delete_recovery_codes(self, user_id: str) -> None:
        removed = self.store.delete_recovery_codes(user_id)
        if removed:
            logger.info("recovery_codes_deleted", user_id=user_id, count=removed)


__all__ = ["SecretCodeService", "normalize_recovery_code"]
