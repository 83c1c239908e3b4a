"""
auth/dependencies.py -- Session extraction and FastAPI Depends() helpers.

Two places in a request's path read the session token:
  1. The session gate middleware (auth/gate.py), before routing.
  2. Route handlers that need the identity, via get_session().

Both use try_get_session() so a token the gate accepted is accepted by the
handler too. Sources, in priority order:
  1. Session cookie (SESSION_COOKIE_NAME, default "session_token").
  2. Authorization: Bearer <token> header -- non-browser clients.

try_get_session() is the soft variant (returns None on failure).
get_session() wraps it and raises HTTP 401 if unauthenticated.
"""

from __future__ import annotations

from fastapi import HTTPException, Request
from starlette.requests import HTTPConnection

from auth.models import SessionClaims
from auth.tokens import decode_session_token
from core.config import get_settings


def read_session_token(request: HTTPConnection) -> str | None:
    """Return the raw session token from the cookie or Bearer header, if any."""
    token = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_session(request: HTTPConnection) -> SessionClaims | None:
    """Return verified session claims, or None. Never raises."""
    token = read_session_token(request)
    if not token:
        return None
    return decode_session_token(token)


def get_session(request: Request) -> SessionClaims:
    """Require a valid session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: SessionClaims = Depends(get_session)): ...
    """
    claims = try_get_session(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return claims
