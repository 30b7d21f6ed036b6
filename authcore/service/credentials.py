from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.clock import Clock, utcnow
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AccountLockedError,
    InvalidCredentialsError,
    ValidationError,
)
from authcore.storage.memory import MemoryStore
from authcore.storage.models import User

logger = get_logger(__name__)

_COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "12345678",
        "123456789",
        "qwertyuiop",
        "iloveyou",
        "sunshine1",
        "letmein1",
        "welcome1",
        "passw0rd",
    }
)


def check_password_strength(
    password: str, *, username: Optional[str] = None, email: Optional[str] = None
) -> None:
    """Reject passwords that are trivially guessable. Raises ``ValidationError``."""

    problem: Optional[str] = None
    lowered = password.lower()
    if len(password) < 8:
        problem = "password must be at least 8 characters"
    elif len(password) > 128:
        problem = "password must be at most 128 characters"
    elif lowered in _COMMON_PASSWORDS:
        problem = "password is too common"
    elif len(set(password)) < 4:
        problem = "password has too few distinct characters"
    elif username and len(username) >= 3 and username.lower() in lowered:
        problem = "password must not contain your username"
    elif email and "@" in email:
        local = email.split("@", 1)[0].lower()
        if len(local) >= 3 and local in lowered:
            problem = "password must not contain your email address"
    if problem:
        raise ValidationError(problem, detail={"field": "password"})


class CredentialService:
    """Primary credential checks, account lockout and token-version bumps."""

    def __init__(self, store: MemoryStore, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the identifier is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(24))

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def _matches(self, stored_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def check_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._matches(self._dummy_hash, password)
            return False
        if record.password_algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=record.password_algo)
            return False
        return self._matches(record.password_hash, password)

    def _lockout_error(self, user: User) -> AccountLockedError:
        now = self._clock()
        retry_after = 0
        if user.lockout_until:
            retry_after = int((user.lockout_until - now).total_seconds() + 0.999)
        return AccountLockedError(retry_after=max(retry_after, 1))

    def _check_counted(self, user: User, password: str) -> None:
        now = self._clock()
        if user.is_locked(now):
            logger.warning("password_check_while_locked", user_id=user.id)
            raise self._lockout_error(user)
        if user.lockout_until is not None:
            # Cooldown elapsed; start counting afresh
            self.store.reset_failed_sign_ins(user.id)

        if not self.check_password(user.id, password):
            updated = self.record_failed_attempt(user.id)
            if updated and updated.is_locked(now):
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    attempts=updated.failed_sign_in_attempts,
                )
                raise self._lockout_error(updated)
            raise InvalidCredentialsError()

    def verify_password(self, identifier: str, password: str) -> User:
        """Resolve ``identifier`` (username or email) and check the password.

        Raises ``InvalidCredentialsError`` without saying which half was wrong,
        or ``AccountLockedError`` once the consecutive-failure threshold is hit.
        """
        user = self.store.get_user_by_identifier(identifier)
        if user is None:
            self._matches(self._dummy_hash, password)
            logger.info("sign_in_unknown_identifier")
            raise InvalidCredentialsError()

        self._check_counted(user, password)

        self.reset(user.id)
        return user

    def confirm_password(self, user_id: str, password: str) -> None:
        """Re-check the password of a signed-in account before a sensitive change.

        Failures share the sign-in counter, so guessing here locks the account
        the same way guessing at sign-in does.
        """
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredentialsError(reason="user_missing")
        self._check_counted(user, password)
        self.store.reset_failed_sign_ins(user_id)

    def record_failed_attempt(self, user_id: str) -> Optional[User]:
        now = self._clock()
        return self.store.record_failed_sign_in(
            user_id,
            now=now,
            threshold=self.settings.account_lockout_threshold,
            lockout_until=now + timedelta(minutes=self.settings.account_lockout_minutes),
        )

    def reset(self, user_id: str) -> None:
        self.store.reset_failed_sign_ins(user_id, now=self._clock())

    def validate_new_password(self, user: User, password: str, *, check_history: bool = True) -> None:
        """Raise ``ValidationError`` if ``password`` is too weak or was used recently."""
        check_password_strength(password, username=user.username, email=user.email)
        if check_history and self._recently_used(user.id, password):
            raise ValidationError(
                "password was used recently", detail={"field": "new_password"}
            )

    def set_password(self, user: User, password: str, *, check_history: bool = True) -> None:
        """Validate, hash and store a new password, keeping a short history."""
        self.validate_new_password(user, password, check_history=check_history)
        pwd_hash, algo = self.hash_password(password)
        self.store.save_password(
            user.id,
            pwd_hash,
            algo,
            history_limit=self.settings.password_history_count,
            now=self._clock(),
        )

    def _recently_used(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            return False
        candidates = [record.password_hash, *record.history]
        return any(self._matches(stored, password) for stored in candidates)

    def bump_token_version(self, user_id: str) -> int:
        version = self.store.bump_token_version(user_id)
        logger.info("token_version_bumped", user_id=user_id, token_version=version)
        return version


__all__ = ["CredentialService", "check_password_strength"]
