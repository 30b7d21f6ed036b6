from __future__ import annotations

import asyncio
import random
import secrets
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from authcore.clock import Clock, utcnow
from authcore.config import get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.accounts import AccountService
from authcore.service.codes import SecretCodeService
from authcore.service.credentials import CredentialService
from authcore.service.email import EmailService
from authcore.service.mfa import MFAOrchestrator
from authcore.service.rate_limit import LockoutGuard, RateLimiter
from authcore.service.sessions import SessionRegistry
from authcore.service.signing import TokenCodec
from authcore.service.state_tokens import StateTokenManager
from authcore.service.tokens import TokenIssuer
from authcore.service.totp import TOTPEngine
from authcore.storage.memory import MemoryStore
from authcore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the wired service graph for the FastAPI app.

    One clock and one RNG are shared by every service so tests can freeze
    time and seed randomness in a single place.
    """

    def __init__(self, *, clock: Clock = utcnow, rng: Optional[random.Random] = None):
        self.settings = get_settings()
        self.clock = clock
        self.rng = rng or secrets.SystemRandom()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = MemoryStore(
            mfa_encryption_key=self.settings.mfa_encryption_key or self.settings.jwt_secret
        )
        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding a connection to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits, MFA lockouts and token revocation; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits, lockouts and "
                    "revocations are held in this process only."
                ),
                mode=fallback_mode,
            )

        settings = self.settings
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.codec = TokenCodec(settings, clock=clock)
        self.credentials = CredentialService(self.store, settings, clock=clock)
        self.codes = SecretCodeService(self.store, settings, clock=clock, rng=self.rng)
        self.totp = TOTPEngine(issuer=settings.totp_issuer, clock=clock, rng=self.rng)
        self.rate_limiter = RateLimiter(self.cache, clock=clock)
        self.lockouts = LockoutGuard(self.cache, settings, clock=clock)
        self.state_tokens = StateTokenManager(
            self.codec, settings, self.store, self.cache, clock=clock, rng=self.rng
        )
        self.tokens = TokenIssuer(self.codec, settings, self.store, self.cache, clock=clock, rng=self.rng)
        self.sessions = SessionRegistry(self.store, self.tokens, settings, clock=clock)
        self.mfa = MFAOrchestrator(
            self.store,
            settings,
            credentials=self.credentials,
            codes=self.codes,
            totp=self.totp,
            lockouts=self.lockouts,
            rate_limiter=self.rate_limiter,
            state_tokens=self.state_tokens,
            sessions=self.sessions,
            email=self.email,
            clock=clock,
        )
        self.accounts = AccountService(
            self.store,
            settings,
            credentials=self.credentials,
            codes=self.codes,
            sessions=self.sessions,
            lockouts=self.lockouts,
            mfa=self.mfa,
            email=self.email,
            clock=clock,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            signup_enabled=settings.allow_signup,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests(*, clock: Clock = utcnow, rng: Optional[random.Random] = None) -> Runtime:
    """Rebuild the runtime singleton for an isolated test."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                if isinstance(runtime.cache, SyncRedisCache):
                    asyncio.run(runtime.cache.close())
                else:
                    try:
                        loop = asyncio.get_running_loop()
                        loop.create_task(runtime.cache.close())
                    except RuntimeError:
                        asyncio.run(runtime.cache.close())
            except (RedisError, OSError) as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock, rng=rng)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
