from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from authcore.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authcore", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (sync Redis client, resettable runtime).",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    email_verification_required: bool = env_field(
        True,
        "EMAIL_VERIFICATION_REQUIRED",
        description="Report new accounts as pending until the emailed code is confirmed",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", description="Allowance for clock skew across nodes"
    )
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    state_token_ttl_minutes: int = env_field(10, "STATE_TOKEN_TTL_MINUTES")

    # Sessions
    max_concurrent_sessions: int = env_field(5, "MAX_CONCURRENT_SESSIONS")

    # Brute-force protection
    account_lockout_threshold: int = env_field(4, "ACCOUNT_LOCKOUT_THRESHOLD")
    account_lockout_minutes: int = env_field(15, "ACCOUNT_LOCKOUT_MINUTES")
    login_rate_limit_per_window: int = env_field(60, "LOGIN_RATE_LIMIT_PER_WINDOW")
    login_rate_limit_window_seconds: int = env_field(60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    mfa_max_attempts: int = env_field(10, "MFA_MAX_ATTEMPTS")
    mfa_lockout_minutes: int = env_field(15, "MFA_LOCKOUT_MINUTES")
    attempts_visibility_threshold: int = env_field(
        3,
        "ATTEMPTS_VISIBILITY_THRESHOLD",
        description="Report remaining code attempts only at or below this count",
    )

    # One-time codes
    secret_code_length: int = env_field(6, "SECRET_CODE_LENGTH")
    secret_code_ttl_seconds: int = env_field(300, "SECRET_CODE_TTL_SECONDS")
    secret_code_max_attempts: int = env_field(3, "SECRET_CODE_MAX_ATTEMPTS")
    code_resend_cooldown_seconds: int = env_field(120, "CODE_RESEND_COOLDOWN_SECONDS")
    password_reset_code_ttl_seconds: int = env_field(1800, "PASSWORD_RESET_CODE_TTL_SECONDS")
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT")
    recovery_code_validity_days: int = env_field(365, "RECOVERY_CODE_VALIDITY_DAYS")
    recovery_code_low_watermark: int = env_field(
        2,
        "RECOVERY_CODE_LOW_WATERMARK",
        description="Prompt regeneration when this many or fewer codes remain",
    )

    # Passwords and MFA
    password_history_count: int = env_field(5, "PASSWORD_HISTORY_COUNT")
    totp_issuer: str = env_field("AuthCore", "TOTP_ISSUER")
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")

    # Email delivery (unset host means log-only dev mode)
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("AuthCore", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator(
        "max_concurrent_sessions",
        "account_lockout_threshold",
        "mfa_max_attempts",
        "secret_code_max_attempts",
        "recovery_code_count",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("secret_code_length")
    @classmethod
    def _code_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("secret_code_length must be between 4 and 10")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated JWT secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authcore"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            # Atomic write: temp file then rename
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
