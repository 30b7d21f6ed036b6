"""Tests for emailed one-time codes and recovery codes."""

import re
from datetime import timedelta

import pytest

from authcore.service.codes import normalize_recovery_code
from authcore.service.errors import InvalidCodeError, RateLimitedError
from authcore.storage.models import CodePurpose


def _wrong(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def user(make_user):
    return make_user()


class TestIssue:
    """Issuing codes."""

    def test_code_is_six_digits(self, runtime, user):
        code = runtime.codes.issue(user.id, CodePurpose.EMAIL_VERIFICATION)
        assert re.fullmatch(r"\d{6}", code)

    def test_only_digest_is_stored(self, runtime, user):
        code = runtime.codes.issue(user.id, CodePurpose.EMAIL_VERIFICATION)
        row = runtime.store.get_secret_code(user.id, CodePurpose.EMAIL_VERIFICATION)
        assert row.code_hash != code
        assert row.code_hash == runtime.codes.hash_code(code)

    def test_resend_within_cooldown_is_rate_limited(self, runtime, user, clock):
        runtime.codes.issue(user.id, CodePurpose.MFA_CHALLENGE)
        clock.advance(30)
        with pytest.raises(RateLimitedError) as exc_info:
            runtime.codes.issue(user.id, CodePurpose.MFA_CHALLENGE)
        assert exc_info.value.retry_after == 90

    def test_resend_allowed_after_cooldown(self, runtime, user, clock):
        runtime.codes.issue(user.id, CodePurpose.MFA_CHALLENGE)
        clock.advance(120)
        assert runtime.codes.cooldown_remaining(user.id, CodePurpose.MFA_CHALLENGE) == 0
        runtime.codes.issue(user.id, CodePurpose.MFA_CHALLENGE)

    def test_cooldown_is_per_purpose(self, runtime, user):
        runtime.codes.issue(user.id, CodePurpose.EMAIL_VERIFICATION)
        runtime.codes.issue(user.id, CodePurpose.PASSWORD_RESET)

    def test_new_code_replaces_previous_one(self, runtime, user, clock):
        first = runtime.codes.issue(user.id, CodePurpose.MFA_CHALLENGE)
        clock.advance(121)
        second = runtime.codes.issue(user.id, CodePurpose.MFA_CHALLENGE)
        live = [
            row
            for row in runtime.store.secret_codes.values()
            if row.user_id == user.id and row.purpose == CodePurpose.MFA_CHALLENGE
        ]
        assert len(live) == 1
        if first != second:
            with pytest.raises(InvalidCodeError):
                runtime.codes.verify(user.id, CodePurpose.MFA_CHALLENGE, first)
        runtime.codes.verify(user.id, CodePurpose.MFA_CHALLENGE, second)

    def test_password_reset_lives_longer(self, runtime):
        assert runtime.codes.ttl_for(CodePurpose.PASSWORD_RESET) == 1800
        assert runtime.codes.ttl_for(CodePurpose.MFA_CHALLENGE) == 300


class TestVerify:
    """Verifying and consuming codes."""

    def test_correct_code_is_single_use(self, runtime, user):
        code = runtime.codes.issue(user.id, CodePurpose.EMAIL_VERIFICATION)
        runtime.codes.verify(user.id, CodePurpose.EMAIL_VERIFICATION, code)
        with pytest.raises(InvalidCodeError) as exc_info:
            runtime.codes.verify(user.id, CodePurpose.EMAIL_VERIFICATION, code)
        assert exc_info.value.reason == "code_not_found"

    def test_code_for_other_purpose_rejected(self, runtime, user):
        code = runtime.codes.issue(user.id, CodePurpose.PASSWORD_RESET)
        with pytest.raises(InvalidCodeError):
            runtime.codes.verify(user.id, CodePurpose.MFA_CHALLENGE, code)

    def test_expired_code_rejected(self, runtime, user, clock):
        code = runtime.codes.issue(user.id, CodePurpose.MFA_CHALLENGE)
        clock.advance(300)
        with pytest.raises(InvalidCodeError) as exc_info:
            runtime.codes.verify(user.id, CodePurpose.MFA_CHALLENGE, code)
        assert exc_info.value.reason == "code_expired"
        assert runtime.store.get_secret_code(user.id, CodePurpose.MFA_CHALLENGE) is None

    def test_reset_code_still_valid_after_five_minutes(self, runtime, user, clock):
        code = runtime.codes.issue(user.id, CodePurpose.PASSWORD_RESET)
        clock.advance(600)
        runtime.codes.verify(user.id, CodePurpose.PASSWORD_RESET, code)

    def test_three_wrong_attempts_delete_the_code(self, runtime, user):
        code = runtime.codes.issue(user.id, CodePurpose.MFA_CHALLENGE)
        seen = []
        for _ in range(3):
            with pytest.raises(InvalidCodeError) as exc_info:
                runtime.codes.verify(user.id, CodePurpose.MFA_CHALLENGE, _wrong(code))
            seen.append(exc_info.value.attempts_remaining)
        assert seen == [2, 1, 0]
        # The right code no longer works either; a new one must be requested
        with pytest.raises(InvalidCodeError) as exc_info:
            runtime.codes.verify(user.id, CodePurpose.MFA_CHALLENGE, code)
        assert exc_info.value.reason == "code_not_found"

    def test_surrounding_whitespace_ignored(self, runtime, user):
        code = runtime.codes.issue(user.id, CodePurpose.EMAIL_VERIFICATION)
        runtime.codes.verify(user.id, CodePurpose.EMAIL_VERIFICATION, f"  {code} ")

    def test_visible_attempts_threshold(self, runtime):
        assert runtime.codes.visible_attempts(9) is None
        assert runtime.codes.visible_attempts(4) is None
        assert runtime.codes.visible_attempts(3) == 3
        assert runtime.codes.visible_attempts(0) == 0


class TestRecoveryCodes:
    """Recovery code batches."""

    def test_batch_shape(self, runtime, user):
        codes = runtime.codes.generate_recovery_codes(user.id)
        assert len(codes) == 10
        assert len(set(codes)) == 10
        for code in codes:
            assert re.fullmatch(r"[a-z0-9]{4}(-[a-z0-9]{4}){3}", code)

    def test_normalization(self):
        assert normalize_recovery_code("AB12-cd34 EF56-gh78") == "ab12cd34ef56gh78"
        assert normalize_recovery_code(None) == ""

    def test_code_accepted_once(self, runtime, user):
        codes = runtime.codes.generate_recovery_codes(user.id)
        assert runtime.codes.consume_recovery_code(user.id, codes[0].upper().replace("-", " "))
        assert not runtime.codes.consume_recovery_code(user.id, codes[0])
        assert runtime.codes.recovery_code_status(user.id)["remaining"] == 9

    def test_regenerate_invalidates_previous_batch(self, runtime, user):
        old = runtime.codes.generate_recovery_codes(user.id)
        new = runtime.codes.generate_recovery_codes(user.id)
        assert not any(runtime.codes.consume_recovery_code(user.id, code) for code in old if code not in new)
        assert runtime.codes.consume_recovery_code(user.id, new[-1])

    def test_codes_expire(self, runtime, user, clock):
        codes = runtime.codes.generate_recovery_codes(user.id)
        clock.advance(days=366)
        assert not runtime.codes.consume_recovery_code(user.id, codes[0])
        assert runtime.codes.recovery_code_status(user.id)["remaining"] == 0

    def test_other_accounts_codes_not_accepted(self, runtime, make_user, user):
        bob = make_user("bob")
        codes = runtime.codes.generate_recovery_codes(bob.id)
        runtime.codes.generate_recovery_codes(user.id)
        assert not runtime.codes.consume_recovery_code(user.id, codes[0])

    def test_status_reports_low_watermark(self, runtime, user, clock):
        codes = runtime.codes.generate_recovery_codes(user.id)
        status = runtime.codes.recovery_code_status(user.id)
        assert status["total"] == 10
        assert status["remaining"] == 10
        assert status["should_regenerate"] is False
        assert status["expires_at"] == clock() + timedelta(days=365)
        for code in codes[:8]:
            assert runtime.codes.consume_recovery_code(user.id, code)
        status = runtime.codes.recovery_code_status(user.id)
        assert status["remaining"] == 2
        assert status["total"] == 10
        assert status["should_regenerate"] is True

    def test_delete(self, runtime, user):
        codes = runtime.codes.generate_recovery_codes(user.id)
        runtime.codes.delete_recovery_codes(user.id)
        assert runtime.codes.recovery_code_status(user.id)["total"] == 0
        assert not runtime.codes.consume_recovery_code(user.id, codes[0])
