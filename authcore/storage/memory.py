from __future__ import annotations

import base64
import hashlib
import os
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, UnknownAccount
from authcore.storage.models import (
    CodePurpose,
    PasswordCredential,
    RecoveryCode,
    SecretCode,
    Session,
    User,
    UserMFAConfig,
)


class MemoryStore:
    """In-process backing store for accounts, codes, sessions and revocations.

    Every read-modify-write runs under a single re-entrant lock so the
    compare-and-swap style helpers (``consume_secret_code``,
    ``use_recovery_code``, ``rotate_session_tokens``) are atomic across
    threads serving concurrent requests.
    """

    def __init__(self, *, mfa_encryption_key: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, PasswordCredential] = {}
        self.mfa_secrets: Dict[str, UserMFAConfig] = {}
        self.secret_codes: Dict[str, SecretCode] = {}
        self.recovery_codes: Dict[str, List[RecoveryCode]] = {}
        self.sessions: Dict[str, Session] = {}
        # jti -> expiry; consulted when no Redis denylist is configured
        self.revoked_tokens: Dict[str, datetime] = {}
        # RLock so helpers can nest acquisitions within the same thread
        self._data_lock = threading.RLock()
        self._mfa_cipher = self._build_mfa_cipher(mfa_encryption_key)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_mfa_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("MFA_SECRET_KEY") or os.getenv("JWT_SECRET")
        if not material:
            raise RuntimeError("MFA encryption key is not configured")
        try:
            return Fernet(self._derive_cipher_key(material))
        except (TypeError, ValueError) as exc:
            raise RuntimeError("Unable to initialize MFA cipher") from exc

    # users
    def create_user(
        self,
        username: str,
        email: str,
        *,
        role: str = "user",
        email_verified: bool = False,
        now: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            email_key = email.lower()
            username_key = username.lower()
            for existing in self.users.values():
                if existing.email.lower() == email_key:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username.lower() == username_key:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                role=role,
                email_verified=email_verified,
            )
            if now is not None:
                user.created_at = now
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        key = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email.lower() == key), None)

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        """Resolve a username or email, case-insensitively."""

        key = identifier.strip().lower()
        with self._data_lock:
            for user in self.users.values():
                if user.email.lower() == key or user.username.lower() == key:
                    return user
            return None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            return user

    def bump_token_version(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise UnknownAccount(user_id)
            user.token_version += 1
            return user.token_version

    def record_failed_sign_in(
        self,
        user_id: str,
        *,
        now: datetime,
        threshold: int,
        lockout_until: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_sign_in_attempts += 1
            user.last_failed_sign_in = now
            if user.failed_sign_in_attempts >= threshold:
                user.lockout_until = lockout_until
            return replace(user)

    def reset_failed_sign_ins(self, user_id: str, *, now: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_sign_in_attempts = 0
            user.last_failed_sign_in = None
            user.lockout_until = None
            if now is not None:
                user.last_sign_in_at = now

    # credentials
    def save_password(
        self,
        user_id: str,
        password_hash: str,
        password_algo: str,
        *,
        history_limit: int = 0,
        now: Optional[datetime] = None,
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise UnknownAccount(user_id, "credentials")
            previous = self.credentials.get(user_id)
            history: List[str] = []
            if previous:
                history = [previous.password_hash, *previous.history][:history_limit]
            record = PasswordCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                history=history,
            )
            if now is not None:
                record.last_updated_at = now
            self.credentials[user_id] = record

    def get_password_record(self, user_id: str) -> Optional[PasswordCredential]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # mfa configuration
    def _encrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            raise

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig:
        with self._data_lock:
            if user_id not in self.users:
                raise UnknownAccount(user_id, "mfa")
            record = UserMFAConfig(
                user_id=user_id, secret=self._encrypt_mfa_secret(secret), enabled=enabled
            )
            self.mfa_secrets[user_id] = record
            return replace(record, secret=secret)

    def enable_user_mfa_secret(self, user_id: str) -> bool:
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return False
            cfg.enabled = True
            return True

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            cfg = self.mfa_secrets.get(user_id)
            if not cfg:
                return None
            return replace(cfg, secret=self._decrypt_mfa_secret(cfg.secret))

    def delete_user_mfa_secret(self, user_id: str) -> bool:
        with self._data_lock:
            return self.mfa_secrets.pop(user_id, None) is not None

    def set_email_mfa(self, user_id: str, enabled: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_mfa_enabled = enabled
            return user

    # one-time codes
    def upsert_secret_code(self, row: SecretCode) -> SecretCode:
        """Store ``row`` as the only live code for its user and purpose."""

        with self._data_lock:
            if row.user_id not in self.users:
                raise UnknownAccount(row.user_id, "code")
            for code_id, existing in list(self.secret_codes.items()):
                if existing.user_id == row.user_id and existing.purpose == row.purpose:
                    self.secret_codes.pop(code_id, None)
            self.secret_codes[row.id] = row
            return replace(row)

    def get_secret_code(self, user_id: str, purpose: CodePurpose) -> Optional[SecretCode]:
        with self._data_lock:
            for row in self.secret_codes.values():
                if row.user_id == user_id and row.purpose == purpose:
                    return replace(row)
            return None

    def register_secret_code_failure(self, code_id: str, max_attempts: int) -> int:
        """Count a wrong submission; returns attempts left, deleting the row at zero."""

        with self._data_lock:
            row = self.secret_codes.get(code_id)
            if not row:
                return 0
            row.attempts += 1
            remaining = max(max_attempts - row.attempts, 0)
            if remaining == 0:
                self.secret_codes.pop(code_id, None)
            return remaining

    def consume_secret_code(self, code_id: str, now: datetime) -> bool:
        with self._data_lock:
            row = self.secret_codes.get(code_id)
            if not row or row.consumed_at is not None:
                return False
            row.consumed_at = now
            self.secret_codes.pop(code_id, None)
            return True

    def delete_secret_code(self, user_id: str, purpose: CodePurpose) -> None:
        with self._data_lock:
            for code_id, row in list(self.secret_codes.items()):
                if row.user_id == user_id and row.purpose == purpose:
                    self.secret_codes.pop(code_id, None)

    # recovery codes
    def replace_recovery_codes(self, user_id: str, rows: Iterable[RecoveryCode]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise UnknownAccount(user_id, "recovery codes")
            self.recovery_codes[user_id] = list(rows)

    def list_recovery_codes(self, user_id: str) -> List[RecoveryCode]:
        with self._data_lock:
            return [replace(row) for row in self.recovery_codes.get(user_id, [])]

    def use_recovery_code(self, code_id: str, now: datetime) -> bool:
        with self._data_lock:
            for rows in self.recovery_codes.values():
                for row in rows:
                    if row.id == code_id:
                        if not row.is_usable(now):
                            return False
                        row.used_at = now
                        return True
            return False

    def delete_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            return len(self.recovery_codes.pop(user_id, []))

    # sessions
    def add_session(self, session: Session, *, max_active: Optional[int] = None) -> List[Session]:
        """Insert ``session`` and evict the user's oldest rows beyond ``max_active``.

        Returns the evicted sessions so the caller can revoke their tokens.
        """

        with self._data_lock:
            if session.user_id not in self.users:
                raise UnknownAccount(session.user_id, "session")
            self.sessions[session.id] = session
            if not max_active:
                return []
            owned = sorted(
                (s for s in self.sessions.values() if s.user_id == session.user_id),
                key=lambda s: s.created_at,
            )
            evicted: List[Session] = []
            for stale in owned[: max(len(owned) - max_active, 0)]:
                if stale.id == session.id:
                    continue
                evicted.append(self.sessions.pop(stale.id))
            return evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_jti(self, jti: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.refresh_jti == jti), None)
            return replace(sess) if sess else None

    def get_session_by_access_jti(self, jti: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.access_jti == jti), None)
            return replace(sess) if sess else None

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            rows = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
            return sorted(rows, key=lambda s: s.created_at)

    def rotate_session_tokens(
        self,
        session_id: str,
        expected_refresh_jti: str,
        *,
        refresh_jti: str,
        refresh_expires_at: datetime,
        access_jti: str,
        access_expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        """Swap in new token ids if the session still holds ``expected_refresh_jti``.

        Returns the row as it was before the swap, or None when another
        caller already rotated it (or the session is gone).
        """

        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.refresh_jti != expected_refresh_jti:
                return None
            previous = replace(sess)
            sess.refresh_jti = refresh_jti
            sess.refresh_expires_at = refresh_expires_at
            sess.access_jti = access_jti
            sess.access_expires_at = access_expires_at
            sess.last_seen_at = now
            return previous

    def touch_session(self, session_id: str, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.last_seen_at = now

    def revoke_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.pop(session_id, None)

    def revoke_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            return [self.sessions.pop(sid) for sid in stale]

    # targeted token revocation
    def denylist_token(self, jti: str, expires_at: datetime) -> None:
        with self._data_lock:
            self.revoked_tokens[jti] = expires_at

    def denylist_token_if_absent(self, jti: str, expires_at: datetime, now: datetime) -> bool:
        """Denylist ``jti`` unless a live entry already exists; True when this call added it."""
        with self._data_lock:
            current = self.revoked_tokens.get(jti)
            if current is not None and current > now:
                return False
            self.revoked_tokens[jti] = expires_at
            return True

    def is_token_denylisted(self, jti: str, now: datetime) -> bool:
        with self._data_lock:
            expires_at = self.revoked_tokens.get(jti)
            if expires_at is None:
                return False
            if expires_at <= now:
                # Token would fail its own expiry check from here on
                self.revoked_tokens.pop(jti, None)
                return False
            return True


__all__ = ["MemoryStore"]
