from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from authcore.api.schemas import (
    EmailResendRequest,
    EmailVerifyRequest,
    Envelope,
    ForgotPasswordRequest,
    MFAConfirmRequest,
    MFADisableRequest,
    MFASelectRequest,
    MFASubmitRequest,
    PasswordChangeRequest,
    RecoveryCodesResponse,
    RecoveryRegenerateRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    SignInRequest,
    StateTokenRequest,
    TokenRefreshRequest,
)
from authcore.service.errors import TokenError
from authcore.service.mfa import ClientInfo
from authcore.service.runtime import get_runtime
from authcore.service.tokens import AuthContext
from authcore.storage.models import MFAMethod

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _client_info(request: Request, device_name: Optional[str] = None) -> ClientInfo:
    user_agent = request.headers.get("user-agent")
    return ClientInfo(
        device_name=device_name or (user_agent[:128] if user_agent else None),
        ip_addr=_client_ip(request),
        user_agent=user_agent,
    )


async def _throttle(request: Request, action: str) -> None:
    """Per-IP throttle shared by the unauthenticated account endpoints."""
    ip = _client_ip(request)
    if not ip:
        return
    runtime = get_runtime()
    await runtime.rate_limiter.enforce(
        f"{action}:ip:{ip}",
        runtime.settings.login_rate_limit_per_window,
        runtime.settings.login_rate_limit_window_seconds,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    """Resolve the bearer access token into an ``AuthContext``."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise TokenError(reason="missing_bearer_token")
    runtime = get_runtime()
    ctx = await runtime.tokens.validate_access(token.strip())
    runtime.sessions.current_session(ctx)
    return ctx


# registration and email verification
@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account.

    Answers ``pending_email_verification`` and mails a code, or ``created``
    when verification is switched off.
    """
    await _throttle(request, "register")
    runtime = get_runtime()
    result = await runtime.accounts.register(body.username, body.email, body.password)
    return Envelope(status="ok", data=result)


@router.post("/auth/email/verify", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerifyRequest, request: Request):
    await _throttle(request, "email_verify")
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.accounts.verify_email(body.email, body.code))


@router.post("/auth/email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailResendRequest, request: Request):
    await _throttle(request, "email_resend")
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.accounts.resend_verification(body.email))


# sign-in flow
@router.post("/auth/sign-in", response_model=Envelope, tags=["auth"])
async def sign_in(body: SignInRequest, request: Request):
    """Check primary credentials.

    Returns tokens directly when the account has no second factor, otherwise
    a state token for the next MFA step.
    """
    runtime = get_runtime()
    result = await runtime.mfa.sign_in(
        body.identifier, body.password, _client_info(request, body.device_name)
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/mfa/select", response_model=Envelope, tags=["auth"])
async def select_mfa_method(body: MFASelectRequest):
    runtime = get_runtime()
    result = await runtime.mfa.select_method(body.state_token, body.method)
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/mfa/totp", response_model=Envelope, tags=["auth"])
async def submit_totp(body: MFASubmitRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.mfa.submit_totp(
        body.state_token, body.code, _client_info(request, body.device_name)
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/mfa/email", response_model=Envelope, tags=["auth"])
async def submit_email_code(body: MFASubmitRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.mfa.submit_email_code(
        body.state_token, body.code, _client_info(request, body.device_name)
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/mfa/email/resend", response_model=Envelope, tags=["auth"])
async def resend_email_code(body: StateTokenRequest):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.mfa.resend_email_code(body.state_token))


@router.post("/auth/mfa/recovery", response_model=Envelope, tags=["auth"])
async def submit_recovery_code(body: MFASubmitRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.mfa.submit_recovery_code(
        body.state_token, body.code, _client_info(request, body.device_name)
    )
    return Envelope(status="ok", data=result.as_dict())


@router.post("/auth/cancel", response_model=Envelope, tags=["auth"])
async def cancel_sign_in(body: StateTokenRequest):
    runtime = get_runtime()
    outcome = await runtime.mfa.cancel(body.state_token)
    return Envelope(status="ok", data={"status": outcome})


# tokens and sessions
@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    """Rotate a refresh token. Each refresh token works exactly once."""
    runtime = get_runtime()
    pair, session = await runtime.sessions.refresh(body.refresh_token)
    return Envelope(status="ok", data={**pair.as_dict(), "session_id": session.id})


@router.post("/auth/sign-out", response_model=Envelope, tags=["auth"])
async def sign_out(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.sessions.sign_out(principal)
    return Envelope(status="ok", data={"message": "signed out"})


@router.post("/auth/sign-out-everywhere", response_model=Envelope, tags=["auth"])
async def sign_out_everywhere(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.accounts.sign_out_everywhere(principal))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.accounts.me(principal))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = [SessionResponse(**row) for row in runtime.sessions.list_sessions(principal)]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.post("/auth/sessions/revoke-others", response_model=Envelope, tags=["auth"])
async def revoke_other_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.sessions.revoke_all_other(principal)
    return Envelope(status="ok", data={"sessions_revoked": revoked})


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    await runtime.sessions.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data={"session_id": session_id, "revoked": True})


# passwords
@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)):
    """Change the password; every session of the account is signed out."""
    runtime = get_runtime()
    result = await runtime.accounts.change_password(
        principal, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=result)


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, request: Request):
    await _throttle(request, "password_forgot")
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.accounts.forgot_password(body.email))


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request):
    await _throttle(request, "password_reset")
    runtime = get_runtime()
    result = await runtime.accounts.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data=result)


# MFA management
@router.get("/auth/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.mfa.mfa_status(principal))


@router.post("/auth/mfa/email/code", response_model=Envelope, tags=["mfa"])
async def request_mfa_email_code(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.mfa.request_mfa_email_code(principal))


@router.get("/auth/mfa/recovery-codes", response_model=Envelope, tags=["mfa"])
async def recovery_code_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=runtime.mfa.recovery_code_status(principal))


@router.post("/auth/mfa/recovery-codes", response_model=Envelope, tags=["mfa"])
async def generate_recovery_codes(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    codes = runtime.mfa.generate_recovery_codes(principal)
    return Envelope(status="ok", data=RecoveryCodesResponse(codes=codes, count=len(codes)))


@router.post("/auth/mfa/recovery-codes/regenerate", response_model=Envelope, tags=["mfa"])
async def regenerate_recovery_codes(
    body: RecoveryRegenerateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    codes = runtime.mfa.regenerate_recovery_codes(principal, body.password)
    return Envelope(status="ok", data=RecoveryCodesResponse(codes=codes, count=len(codes)))


@router.post("/auth/mfa/{method}/enable", response_model=Envelope, tags=["mfa"])
async def enable_mfa(method: MFAMethod, principal: AuthContext = Depends(get_user)):
    """Start enrolment. TOTP returns the secret and otpauth URI; email sends a code."""
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.mfa.enable_mfa(principal, method))


@router.post("/auth/mfa/{method}/confirm", response_model=Envelope, tags=["mfa"])
async def confirm_mfa(
    method: MFAMethod, body: MFAConfirmRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.mfa.confirm_mfa(principal, method, body.code))


@router.post("/auth/mfa/{method}/disable", response_model=Envelope, tags=["mfa"])
async def disable_mfa(
    method: MFAMethod, body: MFADisableRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    result = await runtime.mfa.disable_mfa(
        principal, method, password=body.password, code=body.code
    )
    return Envelope(status="ok", data=result)
