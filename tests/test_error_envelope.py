"""Tests for the error envelope format and exception rendering.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    _public_view,
    register_exception_handlers,
)
from authcore.api.schemas import Envelope, ErrorBody
from authcore.service import errors
from authcore.storage.errors import ConstraintViolation


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_required_fields(self):
        body = ErrorBody(code="unauthorized", message="unauthorized")
        assert body.details is None

    def test_details_may_be_list(self):
        body = ErrorBody(code="validation_error", message="bad", details=[{"field": "email"}])
        assert body.details == [{"field": "email"}]

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestEnvelope:
    def test_status_pattern(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_request_ids_are_unique(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status_code,expected",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (429, "rate_limited"),
            (500, "server_error"),
            (418, "server_error"),
        ],
    )
    def test_code_for_status(self, status_code, expected):
        assert _error_code_for_status(status_code) == expected

    def test_error_response_shape(self):
        response = _error_response(404, "session not found", {"session_id": "s1"})
        body = json.loads(response.body)
        assert response.status_code == 404
        assert body["status"] == "error"
        assert body["data"] is None
        assert body["error"] == {
            "code": "not_found",
            "message": "session not found",
            "details": {"session_id": "s1"},
        }

    def test_explicit_code_and_headers(self):
        response = _error_response(429, "slow down", code="account_locked", headers={"Retry-After": "9"})
        assert json.loads(response.body)["error"]["code"] == "account_locked"
        assert response.headers["Retry-After"] == "9"


class TestPublicView:
    """What clients may learn from each failure."""

    @pytest.mark.parametrize(
        "exc",
        [
            errors.InvalidCredentialsError(),
            errors.TokenExpiredError(),
            errors.TokenVersionMismatchError(),
            errors.StateTokenInvalidError(reason="state_token_wrong_purpose"),
            errors.BadSignatureError("token signature mismatch"),
        ],
    )
    def test_authentication_failures_are_opaque(self, exc):
        assert _public_view(exc) == ("unauthorized", None, None)

    def test_invalid_code_keeps_attempts(self):
        message, details, headers = _public_view(errors.InvalidCodeError(attempts_remaining=2))
        assert message == "invalid or expired code"
        assert details == {"attempts_remaining": 2}
        assert headers is None

    def test_invalid_code_without_attempts(self):
        assert _public_view(errors.InvalidCodeError())[1] is None

    def test_rate_limited_exposes_retry_after(self):
        message, details, headers = _public_view(errors.AccountLockedError(retry_after=900))
        assert message == "account temporarily locked"
        assert details == {"retry_after": 900}
        assert headers == {"Retry-After": "900"}

    def test_other_errors_pass_detail_through(self):
        exc = errors.ValidationError("password is too common", detail={"field": "password"})
        assert _public_view(exc) == ("password is too common", {"field": "password"}, None)


@pytest.fixture
def raising_client():
    """A bare app whose routes raise whatever the test asks for."""
    app = FastAPI()
    register_exception_handlers(app)
    raised = {}

    @app.get("/raise")
    async def _raise():
        raise raised["exc"]

    client = TestClient(app, raise_server_exceptions=False)

    def _call(exc):
        raised["exc"] = exc
        return client.get("/raise")

    return _call


class TestHandlers:
    """Exceptions rendered through the registered handlers."""

    def test_service_error(self, raising_client):
        response = raising_client(errors.EmailNotVerifiedError())
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "email_not_verified"

    def test_token_error_hides_reason(self, raising_client):
        response = raising_client(errors.TokenRevokedError("refresh token already used"))
        assert response.status_code == 401
        assert response.json()["error"] == {"code": "unauthorized", "message": "unauthorized", "details": None}

    def test_rate_limited_header(self, raising_client):
        response = raising_client(errors.RateLimitedError(retry_after=42))
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "42"
        assert response.json()["error"]["details"] == {"retry_after": 42}

    def test_constraint_violation_is_conflict(self, raising_client):
        response = raising_client(ConstraintViolation("duplicate email", {"field": "email"}))
        assert response.status_code == 409
        assert response.json()["error"] == {"code": "conflict", "message": "conflict", "details": None}

    def test_http_exception(self, raising_client):
        response = raising_client(HTTPException(status_code=404, detail="nothing here"))
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "nothing here"

    def test_unhandled_exception(self, raising_client):
        response = raising_client(RuntimeError("boom"))
        assert response.status_code == 500
        body = response.json()
        assert body["error"]["code"] == "server_error"
        assert "boom" not in body["error"]["message"]
