"""
API request and response models for portalauth REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuthResult, ResetError, SessionClaims, TokenCheck, TokenError

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ForgotPasswordRequest(BaseModel):
    """Body for POST /api/auth/forgot-password.

    The field accepts any JSON value so that a missing, null, non-string or
    oversized address reaches the service and comes back as its
    VALIDATION_ERROR envelope rather than a 422.
    """

    email: Any = None


class ValidateTokenRequest(BaseModel):
    token: Any = None


class ResetPasswordRequest(BaseModel):
    """Body for POST /api/auth/reset-password. Accepts newPassword or new_password."""

    model_config = ConfigDict(populate_by_name=True)

    token: Any = None
    new_password: str = Field(alias="newPassword", max_length=255)


class SignInRequest(BaseModel):
    email: str = Field(default="", max_length=320)
    password: str = Field(default="", max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AuthResultResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    error: Optional[ResetError] = None

    @classmethod
    def from_result(cls, result: AuthResult) -> "AuthResultResponse":
        return cls(success=result.success, message=result.message, error=result.error)


class TokenCheckResponse(BaseModel):
    valid: bool
    error: Optional[TokenError] = None
    message: Optional[str] = None

    @classmethod
    def from_check(cls, check: TokenCheck) -> "TokenCheckResponse":
        return cls(valid=check.valid, error=check.error, message=check.message)


class SessionResponse(BaseModel):
    user_id: str
    email: str
    full_name: Optional[str] = None
    expires_at: str

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "SessionResponse":
        return cls(
            user_id=claims.user_id,
            email=claims.email,
            full_name=claims.full_name,
            expires_at=claims.expires_at.isoformat(),
        )


class SignInResponse(BaseModel):
    user_id: str
    email: str
    full_name: Optional[str] = None
    expires_in: int


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error envelope returned by every exception handler."""

    error: ErrorDetail
