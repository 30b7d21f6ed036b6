from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import random
import uuid
from typing import Any

from authcore.clock import Clock, to_epoch, utcnow
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    BadIssuerOrAudienceError,
    BadSignatureError,
    TokenExpiredError,
)

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def new_jti(rng: random.Random) -> str:
    """Random v4 UUID drawn from ``rng`` so tests can seed token ids."""
    return str(uuid.UUID(int=rng.getrandbits(128), version=4))


class TokenCodec:
    """Compact HS256 JWS encoding shared by access, refresh and state tokens."""

    def __init__(self, settings: Settings, *, clock: Clock = utcnow) -> None:
        self.settings = settings
        self._clock = clock
        self._key = settings.jwt_secret.encode()

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        """Verify signature, issuer, audience and (optionally) expiry.

        Raises ``BadSignatureError``, ``BadIssuerOrAudienceError`` or
        ``TokenExpiredError``; the payload is returned only when all pass.
        """

        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise BadSignatureError(reason="token_malformed") from None

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise BadSignatureError(reason="token_malformed") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise BadSignatureError(reason="bad_algorithm")

        try:
            provided = sig_b64.encode("ascii")
        except UnicodeEncodeError:
            raise BadSignatureError(reason="token_malformed") from None
        expected = self._sign(f"{header_b64}.{payload_b64}").encode("ascii")
        if not hmac.compare_digest(expected, provided):
            raise BadSignatureError()
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise BadSignatureError(reason="token_malformed") from None
        if not isinstance(payload, dict):
            raise BadSignatureError(reason="token_malformed")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise BadIssuerOrAudienceError()
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise BadIssuerOrAudienceError()

        try:
            exp_ts = int(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise BadSignatureError(reason="token_malformed") from None
        if verify_exp and exp_ts <= to_epoch(self._clock()) - self.settings.jwt_leeway_seconds:
            raise TokenExpiredError()
        return payload


__all__ = ["TokenCodec", "new_jti"]
