"""
auth/models.py -- Domain dataclasses for the reset and session entities.

Pattern: Data class (pure data container, zero logic). Stores, services and
routes do the work.

Layer rule: no imports from api/, cache/, or store/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class ResetError(str, Enum):
    """Caller-facing error codes for request_reset() and reset_password()."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_TOKEN = "INVALID_TOKEN"
    EXPIRED_TOKEN = "EXPIRED_TOKEN"
    WEAK_PASSWORD = "WEAK_PASSWORD"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class TokenError(str, Enum):
    """Error codes for validate_token().

    INVALID covers both "missing" and "not found" -- the two are never
    distinguished so the endpoint cannot be used as an existence oracle.
    """

    INVALID = "INVALID"
    USED = "USED"
    EXPIRED = "EXPIRED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass
class ResetToken:
    """A single-use password-reset credential.

    The token string is both the lookup key and the bearer credential:
    knowing it is enough to redeem it. `used` only ever goes False -> True.
    """

    token: str
    email: str
    created_at: datetime
    expires_at: datetime
    used: bool = False


@dataclass
class RateLimitEntry:
    """Fixed-window attempt counter for one identifier (email address)."""

    count: int
    reset_time: datetime


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    message: str | None = None


@dataclass
class AuthResult:
    """Outcome of request_reset() / reset_password()."""

    success: bool
    message: str | None = None
    error: ResetError | None = None
    retry_after_seconds: int | None = None  # set only for RATE_LIMITED


@dataclass
class TokenCheck:
    """Outcome of validate_token()."""

    valid: bool
    error: TokenError | None = None
    message: str | None = None


@dataclass
class SessionClaims:
    """Identity carried inside a verified session token.

    access_token is the backend's own bearer token, issued at sign-in. The
    gate re-validates it against the backend when remote validation is on.
    """

    user_id: str
    email: str
    expires_at: datetime
    full_name: str | None = None
    access_token: str | None = None
