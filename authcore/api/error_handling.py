from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from authcore.api.schemas import Envelope, ErrorBody
from authcore.logging import get_logger
from authcore.service.errors import (
    AuthenticationError,
    InvalidCodeError,
    RateLimitedError,
    ServiceError,
)
from authcore.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    envelope = Envelope(status="error", error=ErrorBody(code=error_code, message=message, details=details))
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def _public_view(exc: ServiceError) -> tuple[str, dict | None, dict | None]:
    """Message, details and headers a client may see for ``exc``.

    Authentication failures collapse to a bare ``unauthorized``; the precise
    reason only reaches the log.
    """
    if isinstance(exc, InvalidCodeError):
        details = None
        if exc.attempts_remaining is not None:
            details = {"attempts_remaining": exc.attempts_remaining}
        return exc.message, details, None
    if isinstance(exc, AuthenticationError):
        return "unauthorized", None, None
    if isinstance(exc, RateLimitedError):
        details = {**exc.detail, "retry_after": exc.retry_after}
        return exc.message, details, {"Retry-After": str(exc.retry_after)}
    return exc.message, exc.detail or None, None


def register_exception_handlers(app: FastAPI) -> None:
    """Render domain and storage errors as error envelopes."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        # Which field collided is not disclosed
        return _error_response(409, "conflict", code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            reason=getattr(exc, "reason", None),
            message=exc.message,
        )
        message, details, headers = _public_view(exc)
        return _error_response(exc.status_code, message, details, code=exc.error_code, headers=headers)

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error", path=request.url.path, method=request.method, status_code=exc.status_code
            )
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(exc.status_code, message, headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
