"""
auth/gate.py -- Session gate: authentication check in front of every route.

Runs as HTTP middleware (registered in api/main.py) before routing, so a
protected handler never executes for an unauthenticated caller.

Per request, in precedence order:
  1. Bypass      -- static assets, framework internals, /api/auth/*, the
                    public API allowlist, and anything outside the gate's
                    matcher: pass through untouched.
  2. Session     -- verify the signed session token; absent/invalid means
                    unauthenticated.
  (2b. Remote re-validation, when enabled -- see TokenValidator.)
  3. /signin while authenticated -> 302 /dashboard. The other auth pages
     stay reachable so a signed-in user can still register another account
     or reset a password.
  4. Unauthenticated dashboard -> 302 /signin?callbackUrl=<path+query>
     Unauthenticated API       -> 401 JSON
  5. Pass through.

Introspection status policy (TokenValidator.is_valid):
  200                         -> valid
  401, 403                    -> invalid, always
  any other status (404, 5xx) -> treated like a network error, so the
                                 fail_open setting decides
  RequestException            -> fail_open setting decides

Only 401/403 count as a rejection. With fail_open_on_introspection_error set
(the default), a flaky or misconfigured backend degrades to signature-only
checks rather than locking every user out. Set it to False to make every
non-200 outcome invalid.
"""

from __future__ import annotations

import logging
from enum import Enum
from urllib.parse import urlencode

import requests
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import Response

from auth.backend import BackendClient
from auth.dependencies import try_get_session
from auth.tokens import clear_session_cookie, token_hint
from cache.store import TokenValidationCache
from core.config import Settings

logger = logging.getLogger("portalauth.gate")

_STATIC_PREFIXES = ("/_next", "/static", "/images", "/favicon", "/robots.txt", "/sitemap.xml")
AUTH_PAGES = frozenset({"/signin", "/signup", "/forgot-password", "/reset-password"})
SIGNIN_PATH = "/signin"
DASHBOARD_PATH = "/dashboard"


class RouteKind(str, Enum):
    BYPASS = "bypass"
    AUTH_PAGE = "auth_page"
    DASHBOARD = "dashboard"
    API = "api"
    PUBLIC = "public"  # gated but never protected: "/"


def classify(path: str, public_api_routes: list[str] | tuple[str, ...] = ()) -> RouteKind:
    """Map a request path onto the gate's route categories."""
    if path.startswith(_STATIC_PREFIXES):
        return RouteKind.BYPASS
    if path.startswith("/api/auth"):
        return RouteKind.BYPASS
    if any(path.startswith(route) for route in public_api_routes):
        return RouteKind.BYPASS
    if path == DASHBOARD_PATH or path.startswith(DASHBOARD_PATH + "/"):
        return RouteKind.DASHBOARD
    if path.startswith("/api/"):
        return RouteKind.API
    if path in AUTH_PAGES:
        return RouteKind.AUTH_PAGE
    if path == "/":
        return RouteKind.PUBLIC
    # Outside the matcher: the gate does not look at it at all.
    return RouteKind.BYPASS


class TokenValidator:
    """Remote bearer-token check with a freshness cache and a fail-open policy."""

    def __init__(
        self,
        client: BackendClient,
        cache: TokenValidationCache,
        fail_open: bool = True,
        timeout: float = 3.0,
    ) -> None:
        self.client = client
        self.cache = cache
        self.fail_open = fail_open
        self.timeout = timeout

    def is_valid(self, access_token: str) -> bool:
        """Blocking; call from a worker thread."""
        cached = self.cache.get(access_token)
        if cached is not None:
            return cached

        try:
            status = self.client.validate_token(access_token, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Token introspection unavailable for %s: %s", token_hint(access_token), e)
            valid = self.fail_open
        else:
            if status == 200:
                valid = True
            elif status in (401, 403):
                valid = False
            else:
                logger.warning("Token introspection returned %d for %s", status, token_hint(access_token))
                valid = self.fail_open

        self.cache.set(access_token, valid)
        return valid


class SessionGate:
    """Usage (as in api/main.py):
    gate = SessionGate(settings, validator=None)
    response = await gate.check(request)   # None means "let it through"
    """

    def __init__(self, settings: Settings, validator: TokenValidator | None = None) -> None:
        self.public_api_routes = tuple(settings.public_api_routes)
        self.validator = validator

    async def check(self, request: Request) -> Response | None:
        path = request.url.path
        kind = classify(path, self.public_api_routes)
        if kind is RouteKind.BYPASS:
            return None

        claims = try_get_session(request)
        is_auth = claims is not None

        if (
            is_auth
            and self.validator is not None
            and kind in (RouteKind.DASHBOARD, RouteKind.API)
            and claims.access_token
        ):
            valid = await run_in_threadpool(self.validator.is_valid, claims.access_token)
            if not valid:
                logger.info("Rejected session for %s: backend token invalid", path)
                resp = self._deny(request, kind, expired=True)
                clear_session_cookie(resp)
                return resp

        if is_auth and path == SIGNIN_PATH:
            return RedirectResponse(DASHBOARD_PATH, status_code=302)

        if not is_auth and kind in (RouteKind.DASHBOARD, RouteKind.API):
            return self._deny(request, kind, expired=False)

        return None

    def _deny(self, request: Request, kind: RouteKind, expired: bool) -> Response:
        if kind is RouteKind.DASHBOARD:
            callback = request.url.path
            if request.url.query:
                callback += "?" + request.url.query
            params = {"callbackUrl": callback}
            if expired:
                params["error"] = "SessionExpired"
            return RedirectResponse(f"{SIGNIN_PATH}?{urlencode(params)}", status_code=302)
        message = "Invalid or expired token" if expired else "Authentication required"
        return JSONResponse(status_code=401, content={"error": "Unauthorized", "message": message})
