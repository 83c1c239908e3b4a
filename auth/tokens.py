"""
auth/tokens.py -- Session JWT, reset-token generation, and cookie helpers.

Security design decisions:
  Session: python-jose with HS256. Tokens are signed with SECRET_KEY (the
       shared server secret) and carry the backend user id, email, display
       name, the backend access token and expiry. Verification returns None on
       any failure -- the gate turns that into "unauthenticated".

  Reset tokens: secrets.token_hex(RESET_TOKEN_BYTES) -- 32 bytes by default,
       256 bits of entropy, so guessing an outstanding token is infeasible.
       The raw string is the bearer credential; it is never logged in full
       (see token_hint()).

Layer rule: no imports from api/, cache/, or store/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from auth.models import SessionClaims
from core.config import get_settings

logger = logging.getLogger("portalauth.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_session_token(
    user_id: str,
    email: str,
    access_token: str | None = None,
    full_name: str | None = None,
    expire_seconds: int = 0,
) -> str:
    """Encode a signed session JWT.

    Args:
        user_id:        Backend user id (stringified).
        email:          Stored as the JWT subject claim.
        access_token:   Backend bearer token returned at sign-in. Carried so
                        the gate can re-validate it remotely.
        full_name:      Display name, optional.
        expire_seconds: Session duration. 0 (default) uses
                        Settings.session_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    now = datetime.now(timezone.utc)
    payload = {
        "sub": email,
        "user_id": user_id,
        "name": full_name,
        "access_token": access_token,
        "iat": now,
        "exp": now + timedelta(seconds=duration),
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_session_token(token: str) -> SessionClaims | None:
    """Verify a session JWT. Returns the claims or None on any failure.

    Expired, tampered, wrongly-signed and structurally incomplete tokens all
    come back as None; callers treat None as unauthenticated.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub") or payload.get("user_id") is None:
        return None
    return SessionClaims(
        user_id=str(payload["user_id"]),
        email=payload["sub"],
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        full_name=payload.get("name"),
        access_token=payload.get("access_token"),
    )


# ---------------------------------------------------------------------------
# Reset tokens
# ---------------------------------------------------------------------------


def generate_reset_token(nbytes: int = 0) -> str:
    """Return a new reset token as hex. nbytes=0 uses Settings.reset_token_bytes."""
    return secrets.token_hex(nbytes or _settings.reset_token_bytes)


def token_hint(token: str) -> str:
    """Return a log-safe prefix of a bearer credential."""
    return f"{token[:8]}..." if token else "<empty>"


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.session_expire_seconds
    response.set_cookie(
        _settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )


def clear_session_cookie(response) -> None:
    response.delete_cookie(_settings.session_cookie_name)
