from __future__ import annotations

from authcore.clock import Clock, utcnow
from authcore.config import Settings
from authcore.logging import get_logger, hash_email
from authcore.service.codes import SecretCodeService
from authcore.service.credentials import CredentialService, check_password_strength
from authcore.service.email import EmailService, redact_email
from authcore.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCodeError,
    InvalidCredentialsError,
    RateLimitedError,
    ValidationError,
)
from authcore.service.mfa import MFAOrchestrator
from authcore.service.rate_limit import LockoutGuard
from authcore.service.sessions import SessionRegistry
from authcore.service.tokens import AuthContext
from authcore.storage.errors import ConstraintViolation
from authcore.storage.memory import MemoryStore
from authcore.storage.models import CodePurpose, User

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = "if an account exists for that address, a reset code has been sent"
RESEND_VERIFICATION_MESSAGE = "if the address needs verification, a new code has been sent"


class AccountService:
    """Registration, email verification and password lifecycle.

    Every operation here that changes how the account authenticates bumps
    the token version and drops the account's session rows.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: Settings,
        *,
        credentials: CredentialService,
        codes: SecretCodeService,
        sessions: SessionRegistry,
        lockouts: LockoutGuard,
        mfa: MFAOrchestrator,
        email: EmailService,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.credentials = credentials
        self.codes = codes
        self.sessions = sessions
        self.lockouts = lockouts
        self.mfa = mfa
        self.email = email
        self._clock = clock

    async def _send(self, user: User, purpose: CodePurpose) -> None:
        code = self.codes.issue(user.id, purpose)
        await self.email.deliver_code(user.email, purpose, code, self.codes.ttl_for(purpose))

    def _account(self, ctx: AuthContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            raise InvalidCredentialsError(reason="user_missing")
        return user

    async def _invalidate_everywhere(self, user: User) -> int:
        self.credentials.bump_token_version(user.id)
        return await self.sessions.revoke_all(user.id)

    async def register(self, username: str, email: str, password: str) -> dict:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        check_password_strength(password, username=username, email=email)
        verified = not self.settings.email_verification_required
        try:
            user = self.store.create_user(username, email, email_verified=verified, now=self._clock())
        except ConstraintViolation:
            # Same answer for either collision
            logger.info("register_conflict", email_hash=hash_email(email))
            raise ConflictError("account already exists") from None
        self.credentials.set_password(user, password, check_history=False)
        logger.info("user_registered", user_id=user.id, email_hash=hash_email(email))
        if verified:
            return {"status": "created", "user_id": user.id}
        await self._send(user, CodePurpose.EMAIL_VERIFICATION)
        return {
            "status": "pending_email_verification",
            "user_id": user.id,
            "masked_email": redact_email(user.email),
        }

    async def verify_email(self, email: str, code: str) -> dict:
        """Confirm an address with its mailed code.

        Unknown and already-verified addresses fail exactly like a code that
        was never sent, so the answer never reveals whether an address is
        registered or verified.
        """
        user = self.store.get_user_by_email(email)
        if user is None or user.email_verified:
            raise InvalidCodeError(reason="code_not_found")
        await self.lockouts.ensure_not_locked(user.id)
        try:
            self.codes.verify(user.id, CodePurpose.EMAIL_VERIFICATION, code)
        except InvalidCodeError:
            await self.lockouts.record_failure(user.id)
            raise
        await self.lockouts.clear(user.id)
        self.store.mark_email_verified(user.id)
        logger.info("email_verified", user_id=user.id)
        return {"email_verified": True}

    async def resend_verification(self, email: str) -> dict:
        """Answers the same way whether or not the address is registered."""
        user = self.store.get_user_by_email(email)
        if user is not None and not user.email_verified:
            try:
                await self._send(user, CodePurpose.EMAIL_VERIFICATION)
            except RateLimitedError:
                logger.info("verification_resend_cooldown", user_id=user.id)
        return {"message": RESEND_VERIFICATION_MESSAGE}

    async def forgot_password(self, email: str) -> dict:
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("password_reset_unknown_email", email_hash=hash_email(email))
        else:
            try:
                await self._send(user, CodePurpose.PASSWORD_RESET)
                logger.info("password_reset_requested", user_id=user.id)
            except RateLimitedError:
                logger.info("password_reset_cooldown", user_id=user.id)
        return {"message": FORGOT_PASSWORD_MESSAGE}

    async def reset_password(self, email: str, code: str, new_password: str) -> dict:
        user = self.store.get_user_by_email(email)
        if user is None:
            raise InvalidCodeError(reason="user_missing")
        await self.lockouts.ensure_not_locked(user.id)
        try:
            row = self.codes.check(user.id, CodePurpose.PASSWORD_RESET, code)
        except InvalidCodeError:
            await self.lockouts.record_failure(user.id)
            raise
        # A rejected password leaves the code live for another try
        self.credentials.validate_new_password(user, new_password)
        self.codes.consume(row)
        self.credentials.set_password(user, new_password, check_history=False)
        await self.lockouts.clear(user.id)
        self.store.reset_failed_sign_ins(user.id)
        revoked = await self._invalidate_everywhere(user)
        await self.email.deliver_notice(
            user.email, "Your password was reset", "The password on your account was just reset."
        )
        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return {"password_reset": True}

    async def change_password(self, ctx: AuthContext, current_password: str, new_password: str) -> dict:
        user = self._account(ctx)
        self.credentials.confirm_password(user.id, current_password)
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one", detail={"field": "new_password"}
            )
        self.credentials.set_password(user, new_password)
        revoked = await self._invalidate_everywhere(user)
        await self.email.deliver_notice(
            user.email, "Your password was changed", "The password on your account was just changed."
        )
        logger.info("password_changed", user_id=user.id, sessions_revoked=revoked)
        return {"password_changed": True}

    async def sign_out_everywhere(self, ctx: AuthContext) -> dict:
        user = self._account(ctx)
        revoked = await self._invalidate_everywhere(user)
        logger.info("signed_out_everywhere", user_id=user.id, sessions_revoked=revoked)
        return {"sessions_revoked": revoked}

    def me(self, ctx: AuthContext) -> dict:
        user = self._account(ctx)
        current = self.sessions.current_session(ctx)
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "email_verified": user.email_verified,
            "role": user.role,
            "created_at": user.created_at,
            "last_sign_in_at": user.last_sign_in_at,
            "session_id": current.id if current else None,
            "mfa": self.mfa.mfa_status(ctx),
        }


__all__ = ["AccountService", "FORGOT_PASSWORD_MESSAGE", "RESEND_VERIFICATION_MESSAGE"]
