from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import random
import secrets
from datetime import datetime
from typing import Optional
from urllib.parse import quote, urlencode

from authcore.clock import Clock, utcnow
from authcore.logging import get_logger

logger = get_logger(__name__)


class TOTPEngine:
    """RFC 6238 time-based one-time passwords (HMAC-SHA1, 30s step, 6 digits).

    ``verify`` accepts the current step and exactly one step either side
    to tolerate clock drift between server and authenticator app.
    """

    def __init__(
        self,
        *,
        issuer: str = "AuthCore",
        interval: int = 30,
        digits: int = 6,
        skew_steps: int = 1,
        clock: Clock = utcnow,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.skew_steps = skew_steps
        self._clock = clock
        self._rng = rng or secrets.SystemRandom()

    def provision(self) -> str:
        """New 160-bit shared secret, base32 without padding."""
        raw = bytes(self._rng.getrandbits(8) for _ in range(20))
        return base64.b32encode(raw).decode("ascii").rstrip("=")

    def provisioning_uri(self, secret: str, account_name: str) -> str:
        label = quote(f"{self.issuer}:{account_name}", safe="@:")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    def _decode_secret(self, secret: str) -> Optional[bytes]:
        cleaned = secret.replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return None

    def _code_for_counter(self, key: bytes, counter: int) -> str:
        digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def step(self, at: datetime) -> int:
        return int(at.timestamp()) // self.interval

    def generate(self, secret: str, at: Optional[datetime] = None) -> str:
        key = self._decode_secret(secret)
        if key is None:
            return ""
        return self._code_for_counter(key, self.step(at or self._clock()))

    def verify(self, secret: str, code: str, at: Optional[datetime] = None) -> bool:
        submitted = (code or "").strip().replace(" ", "")
        if len(submitted) != self.digits or not submitted.isdigit():
            return False
        key = self._decode_secret(secret)
        if key is None:
            return False
        current = self.step(at or self._clock())
        matched = False
        # Check every step in the window so timing does not reveal which matched
        for offset in range(-self.skew_steps, self.skew_steps + 1):
            candidate = self._code_for_counter(key, current + offset)
            if hmac.compare_digest(candidate, submitted):
                matched = True
        return matched


__all__ = ["TOTPEngine"]
