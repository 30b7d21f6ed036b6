from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from authcore.storage.models import MFAMethod

_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "invalid_code",
        "forbidden",
        "email_not_verified",
        "not_found",
        "rate_limited",
        "account_locked",
        "validation_error",
        "mfa_not_enabled",
        "conflict",
        "server_error",
    }
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]{3,32}$")


def _validate_username(value: str) -> str:
    """3 to 32 characters: letters, digits, underscore, dot or hyphen."""
    normalized = _normalize_unicode(value.strip())
    if not _USERNAME_PATTERN.match(normalized):
        raise ValueError(
            "username must be 3-32 characters of letters, digits, '.', '_' or '-'"
        )
    return normalized


def _validate_password_length(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(_EmailBody):
    username: str
    password: str

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_length(value)


class EmailVerifyRequest(_EmailBody):
    code: str = Field(..., min_length=4, max_length=10)


class EmailResendRequest(_EmailBody):
    pass


class ForgotPasswordRequest(_EmailBody):
    pass


class ResetPasswordRequest(_EmailBody):
    code: str = Field(..., min_length=4, max_length=10)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_length(value)


class SignInRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=254, description="Username or email")
    password: str = Field(..., min_length=1, max_length=128)
    device_name: Optional[str] = Field(default=None, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        return _normalize_unicode(value.strip())


class StateTokenRequest(BaseModel):
    state_token: str = Field(..., max_length=4096)


class MFASelectRequest(StateTokenRequest):
    method: MFAMethod


class MFASubmitRequest(StateTokenRequest):
    # Recovery codes are 19 characters with their separators
    code: str = Field(..., min_length=4, max_length=32)
    device_name: Optional[str] = Field(default=None, max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_length(value)


class MFAConfirmRequest(BaseModel):
    code: str = Field(..., min_length=4, max_length=10)


class MFADisableRequest(BaseModel):
    """Proof for removing a method: the account password or a code from that method."""

    password: Optional[str] = Field(default=None, max_length=128)
    code: Optional[str] = Field(default=None, max_length=10)

    @model_validator(mode="after")
    def _require_proof(self):
        if not self.password and not self.code:
            raise ValueError("password or code is required")
        return self


class RecoveryRegenerateRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class SessionResponse(BaseModel):
    id: str
    device_name: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_seen_at: datetime
    is_current: bool = False


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class RecoveryCodesResponse(BaseModel):
    codes: List[str]
    count: int
