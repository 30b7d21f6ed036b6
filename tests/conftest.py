import asyncio
import inspect
import os
import random
import re
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything reads settings
_test_tmp_dir = tempfile.mkdtemp(prefix="authcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# No Redis: runs stay hermetic and exercise the in-process fallback
os.environ["REDIS_URL"] = ""
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.service.email import EmailService  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402
from authcore.storage.models import MFAMethod  # noqa: E402

PASSWORD = "Correct-Horse-42"
_CODE_LINE = re.compile(r"^(\d{4,10})$", re.MULTILINE)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    # On a 30 second boundary so TOTP steps line up with whole advances
    return FrozenClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def rng():
    return random.Random(20260302)


@pytest.fixture
def runtime(clock, rng):
    """Runtime wired with the frozen clock and the seeded RNG."""
    return reset_runtime_for_tests(clock=clock, rng=rng)


@pytest.fixture
def outbox(monkeypatch):
    """Capture outgoing mail instead of logging or sending it."""
    sent = []

    def _capture(self, to_email, subject, html_body, text_body=None):
        sent.append({"to": to_email, "subject": subject, "html": html_body, "text": text_body or ""})
        return True

    monkeypatch.setattr(EmailService, "_send_email", _capture)
    return sent


@pytest.fixture
def read_code(outbox):
    """Return the code from the newest message sent to ``email``."""

    def _read(email: str) -> str:
        for message in reversed(outbox):
            if message["to"] == email:
                match = _CODE_LINE.search(message["text"])
                if match:
                    return match.group(1)
        raise AssertionError(f"no code mailed to {email}")

    return _read


@pytest.fixture
def make_user(runtime):
    """Create an account with a password; verified email by default."""

    def _make(username="alice", email=None, password=PASSWORD, verified=True):
        email = email or f"{username}@example.com"
        user = runtime.store.create_user(username, email, email_verified=verified, now=runtime.clock())
        runtime.credentials.set_password(user, password, check_history=False)
        return runtime.store.get_user(user.id)

    return _make


@pytest.fixture
def sign_in_direct(runtime):
    """Mint a session for ``user`` and return ``(token_pair, auth_context)``."""

    async def _sign_in(user, device_name="laptop"):
        fresh = runtime.store.get_user(user.id)
        pair, _ = await runtime.sessions.issue_token_pair(fresh, device_name=device_name)
        ctx = await runtime.tokens.validate_access(pair.access_token)
        runtime.sessions.current_session(ctx)
        return pair, ctx

    return _sign_in


@pytest.fixture
def enroll_totp(runtime, sign_in_direct):
    """Turn on TOTP for ``user``; returns ``(secret, recovery_codes)``."""

    async def _enroll(user):
        _, ctx = await sign_in_direct(user)
        setup = await runtime.mfa.enable_mfa(ctx, MFAMethod.TOTP)
        result = await runtime.mfa.confirm_mfa(ctx, MFAMethod.TOTP, runtime.totp.generate(setup["secret"]))
        return setup["secret"], result["recovery_codes"]

    return _enroll


@pytest.fixture
def enroll_email(runtime, sign_in_direct, read_code):
    """Turn on email codes for ``user``; returns the recovery codes, if first enrolment."""

    async def _enroll(user):
        _, ctx = await sign_in_direct(user)
        await runtime.mfa.enable_mfa(ctx, MFAMethod.EMAIL)
        result = await runtime.mfa.confirm_mfa(ctx, MFAMethod.EMAIL, read_code(user.email))
        return result["recovery_codes"]

    return _enroll


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
