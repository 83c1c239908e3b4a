"""
tests/test_gate.py -- Tests for the session gate middleware.

Route classification is unit-tested directly. Redirect and 401 behaviour is
exercised end-to-end through the real ASGI stack using the app_env fixture
(follow_redirects=False), asserting on Location headers directly -- following
the redirect would hide them.

Coverage:
  - classify(): static bypass, /api/auth bypass, public allowlist, dashboard,
    API, auth pages, root, out-of-matcher paths
  - Unauthenticated dashboard -> 302 /signin?callbackUrl=<path+query>
  - Unauthenticated API -> 401 JSON
  - Authenticated /signin -> 302 /dashboard; other auth pages stay reachable
  - Tampered, expired and foreign-key tokens are treated as unauthenticated
  - Remote validation: invalid backend token -> SessionExpired redirect / 401
    with cookie cleared; fail-open on network errors and 5xx
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from jose import jwt

from auth.gate import RouteKind, SessionGate, TokenValidator, classify
from auth.tokens import create_session_token
from cache.store import TokenValidationCache
from core.config import get_settings

PUBLIC = get_settings().public_api_routes
COOKIE = get_settings().session_cookie_name


def _session(access_token: str | None = None) -> str:
    return create_session_token(user_id="42", email="user@example.com", access_token=access_token)


def _set_cookie_headers(resp) -> list[str]:
    return [v for k, v in resp.headers.multi_items() if k.lower() == "set-cookie"]


# ---------------------------------------------------------------------------
# classify()
# ---------------------------------------------------------------------------


class TestClassify:
    @pytest.mark.parametrize(
        "path",
        ["/_next/static/chunk.js", "/static/app.css", "/images/logo.png", "/favicon.ico", "/robots.txt", "/sitemap.xml"],
    )
    def test_static_assets_bypass(self, path: str) -> None:
        assert classify(path, PUBLIC) is RouteKind.BYPASS

    @pytest.mark.parametrize("path", ["/api/auth/signin", "/api/auth/forgot-password", "/api/auth/session"])
    def test_auth_api_bypasses(self, path: str) -> None:
        assert classify(path, PUBLIC) is RouteKind.BYPASS

    @pytest.mark.parametrize(
        "path",
        ["/api/v1/countries", "/api/third-party-details/7", "/api/currencies", "/api/third-party-auth/login"],
    )
    def test_public_api_allowlist_bypasses(self, path: str) -> None:
        assert classify(path, PUBLIC) is RouteKind.BYPASS

    @pytest.mark.parametrize("path", ["/dashboard", "/dashboard/account", "/dashboard/a/b"])
    def test_dashboard(self, path: str) -> None:
        assert classify(path, PUBLIC) is RouteKind.DASHBOARD

    def test_dashboard_prefix_lookalike_is_not_dashboard(self) -> None:
        assert classify("/dashboards", PUBLIC) is RouteKind.BYPASS

    @pytest.mark.parametrize("path", ["/api/third-party-profile", "/api/orders/1"])
    def test_protected_api(self, path: str) -> None:
        assert classify(path, PUBLIC) is RouteKind.API

    @pytest.mark.parametrize("path", ["/signin", "/signup", "/forgot-password", "/reset-password"])
    def test_auth_pages(self, path: str) -> None:
        assert classify(path, PUBLIC) is RouteKind.AUTH_PAGE

    def test_root_is_public(self) -> None:
        assert classify("/", PUBLIC) is RouteKind.PUBLIC

    def test_outside_matcher_bypasses(self) -> None:
        assert classify("/about", PUBLIC) is RouteKind.BYPASS

    def test_empty_allowlist_protects_everything_under_api(self) -> None:
        assert classify("/api/v1/countries") is RouteKind.API


# ---------------------------------------------------------------------------
# End-to-end gate behaviour
# ---------------------------------------------------------------------------


class TestUnauthenticated:
    def test_dashboard_redirects_to_signin(self, app_env) -> None:
        resp = app_env.client.get("/dashboard/account")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/signin?callbackUrl=%2Fdashboard%2Faccount"

    def test_callback_keeps_query_string(self, app_env) -> None:
        resp = app_env.client.get("/dashboard?tab=orders&page=2")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert location.path == "/signin"
        assert parse_qs(location.query) == {"callbackUrl": ["/dashboard?tab=orders&page=2"]}

    def test_api_returns_401_json(self, app_env) -> None:
        resp = app_env.client.get("/api/third-party-profile")
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized", "message": "Authentication required"}

    @pytest.mark.parametrize("path", ["/", "/signin", "/signup", "/forgot-password", "/reset-password"])
    def test_public_pages_pass(self, app_env, path: str) -> None:
        assert app_env.client.get(path).status_code == 200

    def test_public_api_passes(self, app_env) -> None:
        assert app_env.client.get("/api/v1/countries").status_code == 200

    def test_auth_api_reaches_handler(self, app_env) -> None:
        """/api/auth/* is never gated; the handler's own dependency answers."""
        resp = app_env.client.get("/api/auth/session")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"


class TestAuthenticated:
    def test_dashboard_passes_with_cookie(self, app_env) -> None:
        app_env.client.cookies.set(COOKIE, _session())
        assert app_env.client.get("/dashboard/account").status_code == 200

    def test_api_passes_with_bearer(self, app_env) -> None:
        resp = app_env.client.get("/api/third-party-profile", headers={"Authorization": f"Bearer {_session()}"})
        assert resp.status_code == 200

    def test_signin_redirects_to_dashboard(self, app_env) -> None:
        app_env.client.cookies.set(COOKIE, _session())
        resp = app_env.client.get("/signin")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/dashboard"

    @pytest.mark.parametrize("path", ["/signup", "/forgot-password", "/reset-password"])
    def test_other_auth_pages_stay_reachable(self, app_env, path: str) -> None:
        app_env.client.cookies.set(COOKIE, _session())
        assert app_env.client.get(path).status_code == 200

    def test_tampered_token_is_unauthenticated(self, app_env) -> None:
        header, _, signature = _session().split(".")
        other_payload = create_session_token(user_id="1", email="admin@example.com").split(".")[1]
        app_env.client.cookies.set(COOKIE, f"{header}.{other_payload}.{signature}")
        assert app_env.client.get("/dashboard").status_code == 302

    def test_token_signed_with_other_key_is_unauthenticated(self, app_env) -> None:
        now = datetime.now(timezone.utc)
        forged = jwt.encode(
            {"sub": "user@example.com", "user_id": "42", "exp": now + timedelta(hours=1)},
            "x" * 64,
            algorithm="HS256",
        )
        resp = app_env.client.get("/api/third-party-profile", headers={"Authorization": f"Bearer {forged}"})
        assert resp.status_code == 401

    def test_expired_session_is_unauthenticated(self, app_env) -> None:
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        expired = jwt.encode(
            {"sub": "user@example.com", "user_id": "42", "iat": past - timedelta(days=7), "exp": past},
            get_settings().secret_key,
            algorithm="HS256",
        )
        app_env.client.cookies.set(COOKIE, expired)
        resp = app_env.client.get("/dashboard")
        assert resp.status_code == 302
        assert resp.headers["location"].startswith("/signin?callbackUrl=")


# ---------------------------------------------------------------------------
# Remote token validation
# ---------------------------------------------------------------------------


@pytest.fixture
def backend_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def validator(backend_client, clock) -> TokenValidator:
    return TokenValidator(backend_client, TokenValidationCache(clock=clock))


class TestTokenValidator:
    def test_200_is_valid(self, validator, backend_client) -> None:
        backend_client.validate_token.return_value = 200
        assert validator.is_valid("tok") is True
        backend_client.validate_token.assert_called_once_with("tok", timeout=3.0)

    @pytest.mark.parametrize("status", [401, 403])
    def test_rejection_is_invalid(self, validator, backend_client, status: int) -> None:
        backend_client.validate_token.return_value = status
        assert validator.is_valid("tok") is False

    @pytest.mark.parametrize("status", [500, 502, 404])
    def test_other_status_fails_open(self, validator, backend_client, status: int) -> None:
        backend_client.validate_token.return_value = status
        assert validator.is_valid("tok") is True

    @pytest.mark.parametrize("exc", [requests.ConnectionError("refused"), requests.Timeout("slow")])
    def test_network_error_fails_open(self, validator, backend_client, exc) -> None:
        backend_client.validate_token.side_effect = exc
        assert validator.is_valid("tok") is True

    def test_fail_closed_when_configured(self, backend_client, clock) -> None:
        validator = TokenValidator(backend_client, TokenValidationCache(clock=clock), fail_open=False)
        backend_client.validate_token.side_effect = requests.ConnectionError("refused")
        assert validator.is_valid("tok") is False

    @pytest.mark.parametrize("status", [500, 404])
    def test_other_status_is_invalid_when_fail_closed(self, backend_client, clock, status: int) -> None:
        validator = TokenValidator(backend_client, TokenValidationCache(clock=clock), fail_open=False)
        backend_client.validate_token.return_value = status
        assert validator.is_valid("tok") is False

    def test_verdict_is_cached(self, validator, backend_client) -> None:
        backend_client.validate_token.return_value = 401
        assert validator.is_valid("tok") is False
        assert validator.is_valid("tok") is False
        assert backend_client.validate_token.call_count == 1

    def test_stale_verdict_is_rechecked(self, validator, backend_client, clock) -> None:
        backend_client.validate_token.return_value = 200
        validator.is_valid("tok")
        clock.advance(minutes=5)
        backend_client.validate_token.return_value = 401
        assert validator.is_valid("tok") is False
        assert backend_client.validate_token.call_count == 2


@pytest.fixture
def remote_gate(app_env, backend_client, clock):
    """Swap the app's gate for one with remote validation enabled."""
    app = app_env.client.app
    previous = app.state.session_gate
    app.state.session_gate = SessionGate(
        get_settings(),
        validator=TokenValidator(backend_client, TokenValidationCache(clock=clock)),
    )
    yield app_env
    app.state.session_gate = previous


class TestRemoteValidation:
    def test_valid_backend_token_passes(self, remote_gate, backend_client) -> None:
        backend_client.validate_token.return_value = 200
        remote_gate.client.cookies.set(COOKIE, _session(access_token="backend-tok"))
        assert remote_gate.client.get("/dashboard").status_code == 200

    def test_invalid_backend_token_redirects_with_session_expired(self, remote_gate, backend_client) -> None:
        backend_client.validate_token.return_value = 401
        remote_gate.client.cookies.set(COOKIE, _session(access_token="backend-tok"))
        resp = remote_gate.client.get("/dashboard/account")
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert parse_qs(location.query) == {"callbackUrl": ["/dashboard/account"], "error": ["SessionExpired"]}
        cleared = [h for h in _set_cookie_headers(resp) if h.startswith(f"{COOKIE}=")]
        assert cleared
        assert "max-age=0" in cleared[0].lower()

    def test_invalid_backend_token_on_api_is_401(self, remote_gate, backend_client) -> None:
        backend_client.validate_token.return_value = 403
        resp = remote_gate.client.get(
            "/api/third-party-profile",
            headers={"Authorization": f"Bearer {_session(access_token='backend-tok')}"},
        )
        assert resp.status_code == 401
        assert resp.json() == {"error": "Unauthorized", "message": "Invalid or expired token"}

    def test_backend_down_fails_open(self, remote_gate, backend_client) -> None:
        backend_client.validate_token.side_effect = requests.ConnectionError("refused")
        remote_gate.client.cookies.set(COOKIE, _session(access_token="backend-tok"))
        assert remote_gate.client.get("/dashboard").status_code == 200

    def test_auth_pages_skip_remote_check(self, remote_gate, backend_client) -> None:
        remote_gate.client.cookies.set(COOKIE, _session(access_token="backend-tok"))
        assert remote_gate.client.get("/signup").status_code == 200
        backend_client.validate_token.assert_not_called()

    def test_session_without_access_token_skips_remote_check(self, remote_gate, backend_client) -> None:
        remote_gate.client.cookies.set(COOKIE, _session())
        assert remote_gate.client.get("/dashboard").status_code == 200
        backend_client.validate_token.assert_not_called()
