from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional

from authcore.clock import utcnow


class MFAMethod(str, Enum):
    """Second factors an account can present during sign-in."""

    TOTP = "totp"
    EMAIL = "email"
    RECOVERY_CODE = "recovery_code"


class CodePurpose(str, Enum):
    """What a one-time emailed code authorizes. One live code per purpose."""

    EMAIL_VERIFICATION = "email_verification"
    MFA_CHALLENGE = "mfa_challenge"
    MFA_ENROLLMENT = "mfa_enrollment"
    PASSWORD_RESET = "password_reset"


@dataclass
class User:
    id: str
    username: str
    email: str
    email_verified: bool = False
    role: str = "user"
    token_version: int = 0
    email_mfa_enabled: bool = False
    failed_sign_in_attempts: int = 0
    last_failed_sign_in: Optional[datetime] = None
    lockout_until: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    def is_locked(self, now: datetime) -> bool:
        return bool(self.lockout_until and self.lockout_until > now)


@dataclass
class PasswordCredential:
    user_id: str
    password_hash: str
    password_algo: str
    history: List[str] = field(default_factory=list)
    last_updated_at: datetime = field(default_factory=utcnow)


@dataclass
class UserMFAConfig:
    user_id: str
    secret: str
    enabled: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    last_seen_at: datetime
    refresh_jti: str
    refresh_expires_at: datetime
    access_jti: str
    access_expires_at: datetime
    device_name: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        now: datetime,
        refresh_jti: str,
        refresh_expires_at: datetime,
        access_jti: str,
        access_expires_at: datetime,
        device_name: str | None = None,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> "Session":
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            last_seen_at=now,
            refresh_jti=refresh_jti,
            refresh_expires_at=refresh_expires_at,
            access_jti=access_jti,
            access_expires_at=access_expires_at,
            device_name=device_name,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )


@dataclass
class SecretCode:
    id: str
    user_id: str
    purpose: CodePurpose
    code_hash: str
    created_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None
    attempts: int = 0

    @classmethod
    def new(
        cls, user_id: str, purpose: CodePurpose, code_hash: str, *, now: datetime, ttl_seconds: int
    ) -> "SecretCode":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            purpose=purpose,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class RecoveryCode:
    id: str
    user_id: str
    code_hash: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None

    def is_usable(self, now: datetime) -> bool:
        return self.used_at is None and self.expires_at > now
