"""
api/routes/auth.py -- Password reset and session REST endpoints.

Routes:
  POST /api/auth/forgot-password          -- issue a reset token, queue the email
  POST /api/auth/reset-password/validate  -- check a reset token (read only)
  POST /api/auth/reset-password           -- redeem a token with a new password
  POST /api/auth/signin                   -- backend credential check; sets session cookie
  POST /api/auth/signout                  -- clears session cookie
  GET  /api/auth/session                  -- current session claims (requires session)

Everything under /api/auth is bypassed by the session gate, so each route
decides its own auth policy:
  - forgot-password, reset-password/*, signin, signout: public
  - session: requires a session (get_session)

Security:
  [H2] forgot-password is rate-limited per IP by slowapi on top of the
       per-email limiter inside ResetTokenService.
  [M5] Cache-Control: no-store on every response that carries or consumes
       a credential.
  Anti-enumeration: forgot-password returns the same 200 body whether or not
  the address has an account.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AuthResultResponse,
    ForgotPasswordRequest,
    ResetPasswordRequest,
    SessionResponse,
    SignInRequest,
    SignInResponse,
    TokenCheckResponse,
    ValidateTokenRequest,
)
from auth.backend import BackendClient, BackendError
from auth.dependencies import get_session
from auth.models import AuthResult, ResetError, SessionClaims, TokenError
from auth.reset import ResetTokenService
from auth.tokens import clear_session_cookie, create_session_token, set_session_cookie
from core.config import get_settings

logger = logging.getLogger("portalauth.api.auth")

router = APIRouter()

_settings = get_settings()

_RESET_STATUS: dict[ResetError, int] = {
    ResetError.VALIDATION_ERROR: 400,
    ResetError.RATE_LIMITED: 429,
    ResetError.INVALID_TOKEN: 400,
    ResetError.EXPIRED_TOKEN: 400,
    ResetError.WEAK_PASSWORD: 400,
    ResetError.INTERNAL_ERROR: 500,
}


def _result_response(result: AuthResult) -> JSONResponse:
    status = 200 if result.success else _RESET_STATUS.get(result.error, 400)
    resp = JSONResponse(
        status_code=status,
        content=AuthResultResponse.from_result(result).model_dump(mode="json", exclude_none=True),
    )
    if result.error == ResetError.RATE_LIMITED and result.retry_after_seconds:
        resp.headers["Retry-After"] = str(result.retry_after_seconds)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=AuthResultResponse)
@limiter.limit(_settings.reset_request_ip_limit)  # [H2] must be BELOW @router so the router registers the wrapper
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Issue a reset token for body.email and queue the email.

    The 200 body is identical for known and unknown addresses. Only the
    429 RATE_LIMITED response carries timing information.
    """
    service: ResetTokenService = request.app.state.reset_service
    return _result_response(service.request_reset(body.email))


@router.post("/auth/reset-password/validate", response_model=TokenCheckResponse)
def validate_reset_token(request: Request, body: ValidateTokenRequest) -> JSONResponse:
    """Report whether a reset token can still be redeemed. Never mutates state."""
    service: ResetTokenService = request.app.state.reset_service
    check = service.validate_token(body.token)
    status = 500 if check.error == TokenError.INTERNAL_ERROR else 200
    resp = JSONResponse(
        status_code=status,
        content=TokenCheckResponse.from_check(check).model_dump(mode="json", exclude_none=True),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/reset-password", response_model=AuthResultResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Redeem a reset token. A weak password leaves the token usable for a retry."""
    service: ResetTokenService = request.app.state.reset_service
    return _result_response(service.reset_password(body.token, body.new_password))


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@router.post("/auth/signin", response_model=SignInResponse)
def signin(request: Request, body: SignInRequest) -> JSONResponse:
    """Check credentials with the backend and start a session.

    Backend failures map onto stable codes (INVALID_CREDENTIALS,
    ACCOUNT_NOT_APPROVED, VALIDATION, NETWORK, SERVER_ERROR, MISSING_FIELDS)
    so the sign-in page can pick a message without parsing text.
    """
    backend: BackendClient = request.app.state.backend
    try:
        login = backend.login(body.email, body.password)
    except BackendError as exc:
        logger.info("Sign-in rejected: %s", exc.code)
        resp = JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": exc.code, "message": exc.message}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    token = create_session_token(
        user_id=login.user_id,
        email=login.email,
        access_token=login.access_token,
        full_name=login.full_name,
    )
    resp = JSONResponse(
        status_code=200,
        content=SignInResponse(
            user_id=login.user_id,
            email=login.email,
            full_name=login.full_name,
            expires_in=_settings.session_expire_seconds,
        ).model_dump(),
    )
    set_session_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/signout")
async def signout() -> JSONResponse:
    """Clear the session cookie."""
    resp = JSONResponse(content={"message": "Signed out."})
    clear_session_cookie(resp)
    return resp


@router.get("/auth/session", response_model=SessionResponse)
async def current_session(session: SessionClaims = Depends(get_session)) -> SessionResponse:
    """Return the identity carried by the caller's session token."""
    return SessionResponse.from_claims(session)
