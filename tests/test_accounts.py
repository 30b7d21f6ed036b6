"""Tests for registration, email verification and the password lifecycle."""

import pytest

from authcore.service.accounts import FORGOT_PASSWORD_MESSAGE, RESEND_VERIFICATION_MESSAGE
from authcore.service.errors import (
    AccountLockedError,
    ConflictError,
    ForbiddenError,
    InvalidCodeError,
    InvalidCredentialsError,
    TokenError,
    ValidationError,
)

from conftest import PASSWORD


class TestRegister:
    """Account creation."""

    @pytest.mark.asyncio
    async def test_pending_verification_sends_code(self, runtime, outbox, read_code):
        result = await runtime.accounts.register("dana", "dana@example.com", PASSWORD)
        assert result["status"] == "pending_email_verification"
        assert result["masked_email"] == "da***@example.com"
        assert outbox[-1]["subject"] == "Verify your email"
        assert read_code("dana@example.com")
        user = runtime.store.get_user(result["user_id"])
        assert user.email_verified is False

    @pytest.mark.asyncio
    async def test_created_when_verification_off(self, runtime, outbox):
        runtime.settings.email_verification_required = False
        result = await runtime.accounts.register("dana", "dana@example.com", PASSWORD)
        assert result == {"status": "created", "user_id": result["user_id"]}
        assert outbox == []
        assert runtime.store.get_user(result["user_id"]).email_verified is True

    @pytest.mark.asyncio
    async def test_duplicate_is_generic_conflict(self, runtime, make_user):
        make_user("dana")
        with pytest.raises(ConflictError) as by_name:
            await runtime.accounts.register("DANA", "other@example.com", PASSWORD)
        with pytest.raises(ConflictError) as by_email:
            await runtime.accounts.register("someone", "Dana@Example.com", PASSWORD)
        assert by_name.value.message == by_email.value.message == "account already exists"

    @pytest.mark.asyncio
    async def test_weak_password_rejected_before_create(self, runtime):
        with pytest.raises(ValidationError):
            await runtime.accounts.register("dana", "dana@example.com", "password")
        assert runtime.store.get_user_by_email("dana@example.com") is None

    @pytest.mark.asyncio
    async def test_signup_disabled(self, runtime):
        runtime.settings.allow_signup = False
        with pytest.raises(ForbiddenError):
            await runtime.accounts.register("dana", "dana@example.com", PASSWORD)


class TestEmailVerification:
    """Confirming the address with the emailed code."""

    @pytest.mark.asyncio
    async def test_verify_with_code(self, runtime, outbox, read_code):
        result = await runtime.accounts.register("dana", "dana@example.com", PASSWORD)
        answer = await runtime.accounts.verify_email("dana@example.com", read_code("dana@example.com"))
        assert answer == {"email_verified": True}
        assert runtime.store.get_user(result["user_id"]).email_verified is True

    @pytest.mark.asyncio
    async def test_wrong_code(self, runtime, outbox, read_code):
        await runtime.accounts.register("dana", "dana@example.com", PASSWORD)
        code = read_code("dana@example.com")
        with pytest.raises(InvalidCodeError):
            await runtime.accounts.verify_email("dana@example.com", "000000" if code != "000000" else "111111")

    @pytest.mark.asyncio
    async def test_unknown_address(self, runtime):
        with pytest.raises(InvalidCodeError):
            await runtime.accounts.verify_email("ghost@example.com", "123456")

    @pytest.mark.asyncio
    async def test_verified_address_answers_like_unknown(self, runtime, make_user):
        make_user("erin")
        with pytest.raises(InvalidCodeError) as verified:
            await runtime.accounts.verify_email("erin@example.com", "123456")
        with pytest.raises(InvalidCodeError) as unknown:
            await runtime.accounts.verify_email("ghost@example.com", "123456")
        assert verified.value.reason == unknown.value.reason == "code_not_found"
        assert verified.value.message == unknown.value.message
        assert verified.value.attempts_remaining is unknown.value.attempts_remaining is None

    @pytest.mark.asyncio
    async def test_verified_address_never_locks(self, runtime, make_user):
        """Repeated guesses against a verified account must not reveal it through a lockout."""
        user = make_user("erin")
        for _ in range(runtime.settings.mfa_max_attempts + 2):
            with pytest.raises(InvalidCodeError):
                await runtime.accounts.verify_email("erin@example.com", "123456")
        assert await runtime.lockouts.retry_after(user.id) == 0

    @pytest.mark.asyncio
    async def test_resend_is_enumeration_safe(self, runtime, clock, outbox):
        await runtime.accounts.register("dana", "dana@example.com", PASSWORD)
        sent_before = len(outbox)
        unknown = await runtime.accounts.resend_verification("ghost@example.com")
        during_cooldown = await runtime.accounts.resend_verification("dana@example.com")
        assert unknown == during_cooldown == {"message": RESEND_VERIFICATION_MESSAGE}
        assert len(outbox) == sent_before
        clock.advance(120)
        await runtime.accounts.resend_verification("dana@example.com")
        assert len(outbox) == sent_before + 1

    @pytest.mark.asyncio
    async def test_resend_skips_verified_accounts(self, runtime, make_user, outbox):
        make_user("erin")
        await runtime.accounts.resend_verification("erin@example.com")
        assert outbox == []


class TestPasswordReset:
    """Forgot-password flow."""

    @pytest.mark.asyncio
    async def test_forgot_password_same_answer_for_unknown(self, runtime, make_user, outbox):
        make_user()
        known = await runtime.accounts.forgot_password("alice@example.com")
        unknown = await runtime.accounts.forgot_password("ghost@example.com")
        assert known == unknown == {"message": FORGOT_PASSWORD_MESSAGE}
        assert [m["to"] for m in outbox] == ["alice@example.com"]

    @pytest.mark.asyncio
    async def test_reset_invalidates_everything(self, runtime, make_user, sign_in_direct, outbox, read_code):
        user = make_user()
        pair, _ = await sign_in_direct(user)
        await runtime.accounts.forgot_password("alice@example.com")
        result = await runtime.accounts.reset_password("alice@example.com", read_code(user.email), "Brand-New-Pass-9")
        assert result == {"password_reset": True}
        assert runtime.store.get_user(user.id).token_version == 1
        assert runtime.store.list_user_sessions(user.id) == []
        with pytest.raises(TokenError):
            await runtime.tokens.validate_access(pair.access_token)
        assert runtime.credentials.verify_password("alice", "Brand-New-Pass-9").id == user.id
        assert outbox[-1]["subject"] == "Your password was reset"

    @pytest.mark.asyncio
    async def test_reset_enforces_history(self, runtime, make_user, outbox, read_code):
        user = make_user()
        await runtime.accounts.forgot_password("alice@example.com")
        with pytest.raises(ValidationError):
            await runtime.accounts.reset_password("alice@example.com", read_code(user.email), PASSWORD)

    @pytest.mark.asyncio
    async def test_reset_clears_sign_in_lockout(self, runtime, make_user, outbox, read_code):
        user = make_user()
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                runtime.credentials.verify_password("alice", "Not-The-Password-1")
        with pytest.raises(AccountLockedError):
            runtime.credentials.verify_password("alice", "Not-The-Password-1")
        await runtime.accounts.forgot_password("alice@example.com")
        await runtime.accounts.reset_password("alice@example.com", read_code(user.email), "Brand-New-Pass-9")
        assert runtime.credentials.verify_password("alice", "Brand-New-Pass-9").id == user.id

    @pytest.mark.asyncio
    async def test_reset_code_single_use(self, runtime, make_user, outbox, read_code):
        user = make_user()
        await runtime.accounts.forgot_password("alice@example.com")
        code = read_code(user.email)
        await runtime.accounts.reset_password("alice@example.com", code, "Brand-New-Pass-9")
        with pytest.raises(InvalidCodeError):
            await runtime.accounts.reset_password("alice@example.com", code, "Another-Pass-77")

    @pytest.mark.asyncio
    async def test_rejected_password_keeps_code_live(self, runtime, make_user, outbox, read_code):
        user = make_user()
        await runtime.accounts.forgot_password("alice@example.com")
        code = read_code(user.email)
        with pytest.raises(ValidationError):
            await runtime.accounts.reset_password("alice@example.com", code, "short")
        with pytest.raises(ValidationError):
            await runtime.accounts.reset_password("alice@example.com", code, PASSWORD)
        result = await runtime.accounts.reset_password("alice@example.com", code, "Brand-New-Pass-9")
        assert result == {"password_reset": True}
        assert runtime.credentials.verify_password("alice", "Brand-New-Pass-9").id == user.id


class TestChangePassword:
    """Authenticated password change."""

    @pytest.mark.asyncio
    async def test_change_bumps_version(self, runtime, make_user, sign_in_direct, outbox):
        user = make_user()
        bob = make_user("bob")
        pair, ctx = await sign_in_direct(user)
        bob_pair, _ = await sign_in_direct(bob)
        await runtime.accounts.change_password(ctx, PASSWORD, "Brand-New-Pass-9")
        with pytest.raises(TokenError):
            await runtime.tokens.validate_access(pair.access_token)
        with pytest.raises(TokenError):
            await runtime.sessions.refresh(pair.refresh_token)
        # Other accounts keep their tokens
        await runtime.tokens.validate_access(bob_pair.access_token)
        assert outbox[-1]["subject"] == "Your password was changed"

    @pytest.mark.asyncio
    async def test_wrong_current_password(self, runtime, make_user, sign_in_direct):
        user = make_user()
        _, ctx = await sign_in_direct(user)
        with pytest.raises(InvalidCredentialsError):
            await runtime.accounts.change_password(ctx, "Not-The-Password-1", "Brand-New-Pass-9")

    @pytest.mark.asyncio
    async def test_same_password_rejected(self, runtime, make_user, sign_in_direct):
        user = make_user()
        _, ctx = await sign_in_direct(user)
        with pytest.raises(ValidationError):
            await runtime.accounts.change_password(ctx, PASSWORD, PASSWORD)

    @pytest.mark.asyncio
    async def test_guessing_current_password_locks_account(self, runtime, make_user, sign_in_direct):
        user = make_user()
        _, ctx = await sign_in_direct(user)
        for _ in range(runtime.settings.account_lockout_threshold - 1):
            with pytest.raises(InvalidCredentialsError):
                await runtime.accounts.change_password(ctx, "Not-The-Password-1", "Brand-New-Pass-9")
        with pytest.raises(AccountLockedError) as exc_info:
            await runtime.accounts.change_password(ctx, "Not-The-Password-1", "Brand-New-Pass-9")
        assert exc_info.value.retry_after == 900
        # Locked means locked, even for the right password
        with pytest.raises(AccountLockedError):
            await runtime.accounts.change_password(ctx, PASSWORD, "Brand-New-Pass-9")
        with pytest.raises(AccountLockedError):
            runtime.credentials.verify_password("alice", PASSWORD)

    @pytest.mark.asyncio
    async def test_correct_password_resets_failure_count(self, runtime, make_user, sign_in_direct):
        user = make_user()
        _, ctx = await sign_in_direct(user)
        for _ in range(runtime.settings.account_lockout_threshold - 1):
            with pytest.raises(InvalidCredentialsError):
                await runtime.accounts.change_password(ctx, "Not-The-Password-1", "Brand-New-Pass-9")
        with pytest.raises(ValidationError):
            await runtime.accounts.change_password(ctx, PASSWORD, PASSWORD)
        assert runtime.store.get_user(user.id).failed_sign_in_attempts == 0


class TestSessionsAndProfile:
    @pytest.mark.asyncio
    async def test_sign_out_everywhere(self, runtime, make_user, sign_in_direct):
        user = make_user()
        first, ctx = await sign_in_direct(user, "laptop")
        second, _ = await sign_in_direct(user, "phone")
        assert await runtime.accounts.sign_out_everywhere(ctx) == {"sessions_revoked": 2}
        for pair in (first, second):
            with pytest.raises(TokenError):
                await runtime.tokens.validate_access(pair.access_token)
        assert runtime.store.get_user(user.id).token_version == 1

    @pytest.mark.asyncio
    async def test_me(self, runtime, make_user, sign_in_direct):
        user = make_user()
        _, ctx = await sign_in_direct(user)
        profile = runtime.accounts.me(ctx)
        assert profile["username"] == "alice"
        assert profile["email_verified"] is True
        assert profile["session_id"] == ctx.session_id
        assert profile["mfa"]["methods"] == []
        assert profile["mfa"]["recovery_codes"]["remaining"] == 0
