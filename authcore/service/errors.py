from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - unauthorized (401)
    - invalid_code (401)
    - forbidden / email_not_verified (403)
    - not_found (404)
    - conflict (409)
    - rate_limited / account_locked (429)
    - validation_error / mfa_not_enabled (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401).

    ``reason`` names the precise cause for logs; clients only ever see the
    generic ``unauthorized`` message.
    """
    status_code = 401
    error_code = "unauthorized"
    reason: str = "unauthorized"

    def __init__(self, message: str = "unauthorized", *, reason: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        if reason is not None:
            self.reason = reason


class InvalidCredentialsError(AuthenticationError):
    """Identifier or password did not match; never says which."""
    reason = "invalid_credentials"


class StateTokenInvalidError(AuthenticationError):
    """Pending sign-in token is expired, revoked, malformed or out of step."""
    reason = "state_token_invalid"


class InvalidCodeError(AuthenticationError):
    """Submitted one-time code, TOTP or recovery code was rejected."""
    error_code = "invalid_code"
    reason = "invalid_code"

    def __init__(
        self,
        message: str = "invalid or expired code",
        *,
        attempts_remaining: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.attempts_remaining = attempts_remaining


class TokenError(AuthenticationError):
    """Access or refresh token rejected."""
    reason = "token_invalid"


class TokenExpiredError(TokenError):
    reason = "token_expired"


class TokenRevokedError(TokenError):
    reason = "token_revoked"


class TokenVersionMismatchError(TokenError):
    reason = "token_version_mismatch"


class BadSignatureError(TokenError):
    reason = "bad_signature"


class BadIssuerOrAudienceError(TokenError):
    reason = "bad_issuer_or_audience"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class EmailNotVerifiedError(ForbiddenError):
    """The operation needs a verified email address first."""
    error_code = "email_not_verified"

    def __init__(self, message: str = "email address must be verified first", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MFANotEnabledError(ValidationError):
    """The requested second factor is not enabled for the account."""
    error_code = "mfa_not_enabled"

    def __init__(self, message: str = "mfa method not enabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). ``retry_after`` is in whole seconds."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(int(retry_after), 0)


class AccountLockedError(RateLimitedError):
    """Too many consecutive failures; cools down on its own."""
    error_code = "account_locked"

    def __init__(self, message: str = "account temporarily locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "StateTokenInvalidError",
    "InvalidCodeError",
    "TokenError",
    "TokenExpiredError",
    "TokenRevokedError",
    "TokenVersionMismatchError",
    "BadSignatureError",
    "BadIssuerOrAudienceError",
    "ForbiddenError",
    "EmailNotVerifiedError",
    "MFANotEnabledError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "AccountLockedError",
    "ServerError",
]
