from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from authcore.clock import Clock, utcnow
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.codes import SecretCodeService
from authcore.service.credentials import CredentialService
from authcore.service.email import EmailService, redact_email
from authcore.service.errors import (
    EmailNotVerifiedError,
    InvalidCodeError,
    InvalidCredentialsError,
    MFANotEnabledError,
    StateTokenInvalidError,
    ValidationError,
)
from authcore.service.rate_limit import LockoutGuard, RateLimiter
from authcore.service.sessions import SessionRegistry
from authcore.service.state_tokens import (
    PURPOSE_FOR_METHOD,
    StateClaims,
    StatePurpose,
    StateTokenManager,
)
from authcore.service.tokens import AuthContext, TokenPair
from authcore.service.totp import TOTPEngine
from authcore.storage.memory import MemoryStore
from authcore.storage.models import CodePurpose, MFAMethod, Session, User

logger = get_logger(__name__)


class SignInStatus(str, Enum):
    SUCCESS = "success"
    MFA_TOTP_REQUIRED = "mfa_totp_required"
    MFA_EMAIL_REQUIRED = "mfa_email_required"
    MFA_RECOVERY_CODE_REQUIRED = "mfa_recovery_code_required"
    MFA_SELECTION_REQUIRED = "mfa_selection_required"


_STATUS_FOR_METHOD = {
    MFAMethod.TOTP: SignInStatus.MFA_TOTP_REQUIRED,
    MFAMethod.EMAIL: SignInStatus.MFA_EMAIL_REQUIRED,
    MFAMethod.RECOVERY_CODE: SignInStatus.MFA_RECOVERY_CODE_REQUIRED,
}


@dataclass
class ClientInfo:
    device_name: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class SignInResult:
    status: SignInStatus
    user_id: str
    tokens: Optional[TokenPair] = None
    session_id: Optional[str] = None
    state_token: Optional[str] = None
    state_expires_at: Optional[datetime] = None
    methods: List[MFAMethod] = field(default_factory=list)
    masked_email: Optional[str] = None
    recovery_available: bool = False
    recovery_codes_remaining: Optional[int] = None

    def as_dict(self) -> dict:
        body: dict = {"status": self.status.value, "user_id": self.user_id}
        if self.tokens is not None:
            body.update(self.tokens.as_dict())
            body["session_id"] = self.session_id
        if self.state_token is not None:
            body.update(
                {
                    "state_token": self.state_token,
                    "state_expires_at": self.state_expires_at.isoformat()
                    if self.state_expires_at
                    else None,
                    "methods": [m.value for m in self.methods],
                    "masked_email": self.masked_email,
                    "recovery_available": self.recovery_available,
                }
            )
        if self.recovery_codes_remaining is not None:
            body["recovery_codes_remaining"] = self.recovery_codes_remaining
        return body


Verifier = Callable[[User, str], Awaitable[None]]


class MFAOrchestrator:
    """Sign-in state machine: credentials, method choice, second factor, tokens.

    ``sign_in`` either completes directly (no MFA) or hands back a state
    token scoped to the next step. Each submit validates that token,
    dispatches to the verifier for its method, and on success revokes the
    state token and mints a session. Also owns MFA enrolment and removal,
    which always bump the token version.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        credentials: CredentialService,
        codes: SecretCodeService,
        totp: TOTPEngine,
        lockouts: LockoutGuard,
        rate_limiter: RateLimiter,
        state_tokens: StateTokenManager,
        sessions: SessionRegistry,
        email: EmailService,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.codes = codes
        self.totp = totp
        self.lockouts = lockouts
        self.rate_limiter = rate_limiter
        self.state_tokens = state_tokens
        self.sessions = sessions
        self.email = email
        self._clock = clock
        self._verifiers: Dict[MFAMethod, Verifier] = {
            MFAMethod.TOTP: self._verify_totp,
            MFAMethod.EMAIL: self._verify_email_code,
            MFAMethod.RECOVERY_CODE: self._verify_recovery_code,
        }

    # helpers
    def enabled_methods(self, user: User) -> List[MFAMethod]:
        methods: List[MFAMethod] = []
        cfg = self.store.get_user_mfa_secret(user.id)
        if cfg and cfg.enabled:
            methods.append(MFAMethod.TOTP)
        if user.email_mfa_enabled:
            methods.append(MFAMethod.EMAIL)
        return methods

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            raise StateTokenInvalidError(reason="user_missing")
        return user

    async def _load_flow(self, token: str, purposes) -> tuple[StateClaims, User]:
        claims = await self.state_tokens.validate(token, purposes=purposes)
        user = self._require_user(claims.user_id)
        if claims.token_version != user.token_version:
            raise StateTokenInvalidError(reason="token_version_mismatch")
        return claims, user

    async def _send_code(self, user: User, purpose: CodePurpose, *, quiet_cooldown: bool = False) -> None:
        if quiet_cooldown and self.codes.cooldown_remaining(user.id, purpose) > 0:
            # A live code was sent moments ago; keep it rather than spam the inbox
            return
        code = self.codes.issue(user.id, purpose)
        await self.email.deliver_code(user.email, purpose, code, self.codes.ttl_for(purpose))

    def _challenge(
        self, user: User, token: str, claims: StateClaims, status: SignInStatus, methods: List[MFAMethod]
    ) -> SignInResult:
        remaining = self.codes.recovery_code_status(user.id)["remaining"]
        return SignInResult(
            status=status,
            user_id=user.id,
            state_token=token,
            state_expires_at=claims.expires_at,
            methods=methods,
            masked_email=redact_email(user.email),
            recovery_available=remaining > 0,
        )

    async def _complete(self, user: User, client: ClientInfo) -> SignInResult:
        pair, session = await self.sessions.issue_token_pair(
            user,
            device_name=client.device_name,
            ip_addr=client.ip_addr,
            user_agent=client.user_agent,
        )
        self.credentials.reset(user.id)
        logger.info("sign_in_succeeded", user_id=user.id, session_id=session.id)
        return SignInResult(
            status=SignInStatus.SUCCESS,
            user_id=user.id,
            tokens=pair,
            session_id=session.id,
        )

    # sign-in flow
    async def sign_in(self, identifier: str, password: str, client: Optional[ClientInfo] = None) -> SignInResult:
        client = client or ClientInfo()
        if client.ip_addr:
            await self.rate_limiter.enforce(
                f"sign_in:ip:{client.ip_addr}",
                self.settings.login_rate_limit_per_window,
                self.settings.login_rate_limit_window_seconds,
            )
        user = self.credentials.verify_password(identifier, password)
        methods = self.enabled_methods(user)
        if not methods:
            return await self._complete(user, client)

        if len(methods) == 1:
            method = methods[0]
            token, claims = self.state_tokens.issue(
                user.id,
                PURPOSE_FOR_METHOD[method],
                token_version=user.token_version,
                pending_method=method,
            )
            if method == MFAMethod.EMAIL:
                await self._send_code(user, CodePurpose.MFA_CHALLENGE, quiet_cooldown=True)
            logger.info("mfa_challenge_issued", user_id=user.id, method=method.value)
            return self._challenge(user, token, claims, _STATUS_FOR_METHOD[method], methods)

        token, claims = self.state_tokens.issue(
            user.id, StatePurpose.AWAITING_MFA_SELECTION, token_version=user.token_version
        )
        logger.info("mfa_selection_required", user_id=user.id, methods=[m.value for m in methods])
        return self._challenge(user, token, claims, SignInStatus.MFA_SELECTION_REQUIRED, methods)

    async def select_method(self, state_token: str, method: MFAMethod) -> SignInResult:
        claims, user = await self._load_flow(state_token, {StatePurpose.AWAITING_MFA_SELECTION})
        methods = self.enabled_methods(user)
        if not methods or (method != MFAMethod.RECOVERY_CODE and method not in methods):
            raise MFANotEnabledError()
        await self.state_tokens.claim(claims)
        token, new_claims = self.state_tokens.issue(
            user.id,
            PURPOSE_FOR_METHOD[method],
            token_version=user.token_version,
            pending_method=method,
        )
        if method == MFAMethod.EMAIL:
            await self._send_code(user, CodePurpose.MFA_CHALLENGE, quiet_cooldown=True)
        logger.info("mfa_method_selected", user_id=user.id, method=method.value)
        return self._challenge(user, token, new_claims, _STATUS_FOR_METHOD[method], methods)

    async def resend_email_code(self, state_token: str) -> dict:
        _, user = await self._load_flow(state_token, {StatePurpose.AWAITING_EMAIL_CODE})
        if not user.email_mfa_enabled:
            raise MFANotEnabledError()
        await self._send_code(user, CodePurpose.MFA_CHALLENGE)
        return {
            "masked_email": redact_email(user.email),
            "retry_after": self.settings.code_resend_cooldown_seconds,
        }

    async def _verify_totp(self, user: User, submitted: str) -> None:
        cfg = self.store.get_user_mfa_secret(user.id)
        if not cfg or not self.totp.verify(cfg.secret, submitted):
            raise InvalidCodeError(reason="totp_mismatch")

    async def _verify_email_code(self, user: User, submitted: str) -> None:
        self.codes.verify(user.id, CodePurpose.MFA_CHALLENGE, submitted)

    async def _verify_recovery_code(self, user: User, submitted: str) -> None:
        if not self.codes.consume_recovery_code(user.id, submitted):
            raise InvalidCodeError(reason="recovery_code_invalid")

    async def _guarded_verify(self, user: User, method: MFAMethod, submitted: str) -> None:
        """Run the method's verifier behind the per-account MFA failure counter."""
        await self.lockouts.ensure_not_locked(user.id)
        try:
            await self._verifiers[method](user, submitted)
        except InvalidCodeError as exc:
            remaining = await self.lockouts.record_failure(user.id)
            if exc.attempts_remaining is not None:
                remaining = min(remaining, exc.attempts_remaining)
            exc.attempts_remaining = self.codes.visible_attempts(remaining)
            logger.warning(
                "mfa_verification_failed", user_id=user.id, method=method.value, reason=exc.reason
            )
            raise
        await self.lockouts.clear(user.id)

    async def submit(
        self,
        state_token: str,
        method: MFAMethod,
        code: str,
        client: Optional[ClientInfo] = None,
    ) -> SignInResult:
        # Recovery codes are a universal fallback from any pending step
        if method == MFAMethod.RECOVERY_CODE:
            purposes = set(StatePurpose)
        else:
            purposes = {PURPOSE_FOR_METHOD[method]}
        claims, user = await self._load_flow(state_token, purposes)
        methods = self.enabled_methods(user)
        if not methods or (method != MFAMethod.RECOVERY_CODE and method not in methods):
            raise MFANotEnabledError()
        await self._guarded_verify(user, method, code)
        await self.state_tokens.claim(claims)
        result = await self._complete(user, client or ClientInfo())
        if method == MFAMethod.RECOVERY_CODE:
            result.recovery_codes_remaining = self.codes.recovery_code_status(user.id)["remaining"]
        logger.info("mfa_verified", user_id=user.id, method=method.value)
        return result

    async def submit_totp(self, state_token: str, code: str, client: Optional[ClientInfo] = None) -> SignInResult:
        return await self.submit(state_token, MFAMethod.TOTP, code, client)

    async def submit_email_code(self, state_token: str, code: str, client: Optional[ClientInfo] = None) -> SignInResult:
        return await self.submit(state_token, MFAMethod.EMAIL, code, client)

    async def submit_recovery_code(self, state_token: str, code: str, client: Optional[ClientInfo] = None) -> SignInResult:
        return await self.submit(state_token, MFAMethod.RECOVERY_CODE, code, client)

    async def cancel(self, state_token: str) -> str:
        return await self.state_tokens.cancel(state_token)

    # enrolment and removal
    def _account(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            raise InvalidCredentialsError(reason="user_missing")
        return user

    async def _after_mfa_change(self, user: User, title: str, lead: str) -> None:
        self.credentials.bump_token_version(user.id)
        await self.sessions.revoke_all(user.id)
        await self.email.deliver_notice(user.email, title, lead)

    async def enable_mfa(self, ctx: AuthContext, method: MFAMethod) -> dict:
        user = self._account(ctx)
        if method == MFAMethod.RECOVERY_CODE:
            raise ValidationError("recovery codes are generated, not enabled")
        if not user.email_verified:
            raise EmailNotVerifiedError()
        if method in self.enabled_methods(user):
            raise ValidationError(f"{method.value} is already enabled")
        if method == MFAMethod.TOTP:
            secret = self.totp.provision()
            self.store.set_user_mfa_secret(user.id, secret, enabled=False)
            logger.info("mfa_setup_started", user_id=user.id, method=method.value)
            return {
                "method": method.value,
                "secret": secret,
                "otpauth_uri": self.totp.provisioning_uri(secret, user.email),
            }
        await self._send_code(user, CodePurpose.MFA_ENROLLMENT)
        logger.info("mfa_setup_started", user_id=user.id, method=method.value)
        return {
            "method": method.value,
            "masked_email": redact_email(user.email),
            "expires_in": self.codes.ttl_for(CodePurpose.MFA_ENROLLMENT),
        }

    async def confirm_mfa(self, ctx: AuthContext, method: MFAMethod, code: str) -> dict:
        """Commit a pending enrolment once the caller proves possession."""
        user = self._account(ctx)
        if method in self.enabled_methods(user):
            raise ValidationError(f"{method.value} is already enabled")
        await self.lockouts.ensure_not_locked(user.id)
        try:
            if method == MFAMethod.TOTP:
                cfg = self.store.get_user_mfa_secret(user.id)
                if cfg is None:
                    raise ValidationError("totp setup has not been started")
                if not self.totp.verify(cfg.secret, code):
                    raise InvalidCodeError(reason="totp_mismatch")
            elif method == MFAMethod.EMAIL:
                self.codes.verify(user.id, CodePurpose.MFA_ENROLLMENT, code)
            else:
                raise ValidationError("recovery codes are generated, not enabled")
        except InvalidCodeError as exc:
            remaining = await self.lockouts.record_failure(user.id)
            if exc.attempts_remaining is not None:
                remaining = min(remaining, exc.attempts_remaining)
            exc.attempts_remaining = self.codes.visible_attempts(remaining)
            raise
        await self.lockouts.clear(user.id)

        if method == MFAMethod.TOTP:
            self.store.enable_user_mfa_secret(user.id)
        else:
            self.store.set_email_mfa(user.id, True)

        recovery_codes: Optional[List[str]] = None
        if not self.store.list_recovery_codes(user.id):
            recovery_codes = self.codes.generate_recovery_codes(user.id)
        await self._after_mfa_change(
            user,
            "Two-factor authentication enabled",
            f"{method.value} was added as a sign-in method on your account.",
        )
        logger.info("mfa_enabled", user_id=user.id, method=method.value)
        return {"method": method.value, "enabled": True, "recovery_codes": recovery_codes}

    async def request_mfa_email_code(self, ctx: AuthContext) -> dict:
        """Send a challenge code used as proof when disabling email MFA."""
        user = self._account(ctx)
        if not user.email_mfa_enabled:
            raise MFANotEnabledError()
        await self._send_code(user, CodePurpose.MFA_CHALLENGE)
        return {"masked_email": redact_email(user.email)}

    async def disable_mfa(
        self,
        ctx: AuthContext,
        method: MFAMethod,
        *,
        password: Optional[str] = None,
        code: Optional[str] = None,
    ) -> dict:
        user = self._account(ctx)
        if method not in self.enabled_methods(user):
            raise MFANotEnabledError()
        if password:
            self.credentials.confirm_password(user.id, password)
        elif code:
            await self._guarded_verify(user, method, code)
        else:
            raise ValidationError("password or code is required", detail={"fields": ["password", "code"]})

        if method == MFAMethod.TOTP:
            self.store.delete_user_mfa_secret(user.id)
        else:
            self.store.set_email_mfa(user.id, False)
        recovery_deleted = False
        if not self.enabled_methods(user):
            self.codes.delete_recovery_codes(user.id)
            recovery_deleted = True
        await self._after_mfa_change(
            user,
            "Two-factor authentication method removed",
            f"{method.value} was removed as a sign-in method on your account.",
        )
        logger.info("mfa_disabled", user_id=user.id, method=method.value)
        return {"method": method.value, "enabled": False, "recovery_codes_deleted": recovery_deleted}

    def mfa_status(self, ctx: AuthContext) -> dict:
        user = self._account(ctx)
        cfg = self.store.get_user_mfa_secret(user.id)
        methods = self.enabled_methods(user)
        return {
            "methods": [m.value for m in methods],
            "totp_enabled": MFAMethod.TOTP in methods,
            "totp_pending": bool(cfg and not cfg.enabled),
            "email_enabled": MFAMethod.EMAIL in methods,
            "recovery_codes": self.codes.recovery_code_status(user.id),
        }

    # recovery codes
    def generate_recovery_codes(self, ctx: AuthContext) -> List[str]:
        user = self._account(ctx)
        if not self.enabled_methods(user):
            raise MFANotEnabledError("enable a second factor before generating recovery codes")
        return self.codes.generate_recovery_codes(user.id)

    def regenerate_recovery_codes(self, ctx: AuthContext, password: str) -> List[str]:
        user = self._account(ctx)
        self.credentials.confirm_password(user.id, password)
        return self.generate_recovery_codes(ctx)

    def recovery_code_status(self, ctx: AuthContext) -> dict:
        user = self._account(ctx)
        return self.codes.recovery_code_status(user.id)


__all__ = ["ClientInfo", "MFAOrchestrator", "SignInResult", "SignInStatus"]
