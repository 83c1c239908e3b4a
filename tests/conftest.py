"""
tests/conftest.py -- Shared test fixtures for portalauth.

This module provides:
  - FakeClock / ImmediateExecutor / RecordingMailer: deterministic stand-ins
    for time, the mail thread pool, and SMTP
  - service: a ResetTokenService over fresh in-memory stores
  - app_env: TestClient over the real app with a patched lifespan that wires
    the fake collaborators into app.state

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from concurrent.futures import Future
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi import APIRouter
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.backend import BackendClient
from auth.gate import SessionGate
from auth.limiter import ResetRateLimiter
from auth.mailer import MailDispatcher
from auth.reset import ResetTokenService
from core.config import get_settings
from store.kv import MemoryStore

# ---------------------------------------------------------------------------
# Stand-in protected pages
#
# The UI layer is not part of this service. These routes exist only so an
# allowed request has somewhere to land (200) and a gated one visibly does not.
# ---------------------------------------------------------------------------

_pages = APIRouter()


@_pages.get("/")
@_pages.get("/signin")
@_pages.get("/signup")
@_pages.get("/forgot-password")
@_pages.get("/reset-password")
@_pages.get("/dashboard")
@_pages.get("/dashboard/account")
@_pages.get("/api/third-party-profile")
@_pages.get("/api/v1/countries")
async def _stub_page() -> dict:
    return {"ok": True}


app.include_router(_pages)

# ---------------------------------------------------------------------------
# Deterministic collaborators
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class ImmediateExecutor:
    """Executor that runs the submitted callable inline."""

    def __init__(self) -> None:
        self.closed = False

    def submit(self, fn, *args, **kwargs) -> Future:
        if self.closed:
            raise RuntimeError("cannot schedule new futures after shutdown")
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True, **kwargs) -> None:
        self.closed = True


@dataclass
class RecordingMailer:
    """Collects (email, token, expires_at) triples; fails the first `failures` sends."""

    failures: int = 0
    sent: list = field(default_factory=list)
    attempts: int = 0

    def send_reset(self, email: str, token: str, expires_at: datetime) -> None:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError("smtp down")
        self.sent.append((email, token, expires_at))

    @property
    def last_token(self) -> str:
        return self.sent[-1][1]


def make_service(clock: FakeClock, mailer: RecordingMailer, **kwargs) -> ResetTokenService:
    dispatcher = MailDispatcher(mailer, max_attempts=1, executor=ImmediateExecutor(), sleep=lambda s: None)
    return ResetTokenService(
        MemoryStore(),
        ResetRateLimiter(MemoryStore(), clock=clock),
        dispatcher=dispatcher,
        clock=clock,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def service(clock: FakeClock, mailer: RecordingMailer) -> ResetTokenService:
    return make_service(clock, mailer)


@pytest.fixture
def build_service(clock: FakeClock, mailer: RecordingMailer):
    """Factory for a service with non-default options, sharing clock and mailer."""
    return lambda **kwargs: make_service(clock, mailer, **kwargs)


@pytest.fixture(autouse=True)
def _reset_ip_limiter() -> None:
    """Clear slowapi's in-memory counters so IP limits never leak between tests."""
    limiter.reset()


def _patch_lifespan(state: SimpleNamespace):
    """Return an async context manager that replaces the real lifespan.

    Wires the test collaborators into app.state so TestClient routes see
    isolated stores and never touch the network or SMTP.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.reset_service = state.service
        app.state.mail_dispatcher = state.service.dispatcher
        app.state.backend = state.backend
        app.state.session_gate = SessionGate(get_settings())
        app.state.sweep_task = None
        yield

    return test_lifespan


@pytest.fixture
def app_env(clock: FakeClock, mailer: RecordingMailer) -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with client, service, clock, mailer and backend mock.

    follow_redirects=False: gate tests assert on redirect Location headers,
    which are invisible once the client follows them.
    """
    state = SimpleNamespace(
        service=make_service(clock, mailer),
        backend=MagicMock(spec=BackendClient),
        clock=clock,
        mailer=mailer,
    )
    app.router.lifespan_context = _patch_lifespan(state)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        state.client = client
        yield state
