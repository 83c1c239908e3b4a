"""
api/main.py -- FastAPI application entry point for portalauth.

Run with:  uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route IP limits from api.limiter
  4. log_requests          -- method, path, status, latency per request
  5. session_gate          -- auth/gate.py; may answer before routing

Lifespan builds the stores, the reset service, the mail dispatcher, the
backend client and the gate, and tears them down symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from auth.backend import BackendClient
from auth.gate import SessionGate, TokenValidator
from auth.limiter import ResetRateLimiter
from auth.mailer import MailDispatcher, build_mailer
from auth.reset import ResetTokenService
from cache.store import TokenValidationCache
from core.config import Settings, get_settings
from store.kv import MemoryStore
from store.sql import (
    RATE_LIMITS,
    RESET_TOKENS,
    SqlStore,
    create_store_engine,
    decode_rate_limit,
    decode_reset_token,
    encode_rate_limit,
    encode_reset_token,
)

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("portalauth.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Component assembly
# ---------------------------------------------------------------------------


def build_stores(settings: Settings):
    """Return (token_store, rate_limit_store) for the configured STORE_URL."""
    if not settings.store_url:
        return MemoryStore(), MemoryStore()
    engine = create_store_engine(settings.store_url)
    tokens = SqlStore(engine, RESET_TOKENS, encode_reset_token, decode_reset_token)
    counters = SqlStore(engine, RATE_LIMITS, encode_rate_limit, decode_rate_limit)
    return tokens, counters


def build_gate(settings: Settings, backend: BackendClient) -> SessionGate:
    validator = None
    if settings.remote_token_validation:
        validator = TokenValidator(
            backend,
            TokenValidationCache(
                ttl=settings.token_validation_cache_seconds,
                max_entries=settings.token_validation_cache_max_entries,
            ),
            fail_open=settings.fail_open_on_introspection_error,
            timeout=settings.token_validation_timeout_seconds,
        )
    return SessionGate(settings, validator=validator)


# ---------------------------------------------------------------------------
# Background sweep task
# ---------------------------------------------------------------------------


async def _sweep_loop(app: FastAPI, interval: int) -> None:
    """Collect spent reset tokens and closed rate-limit windows every `interval` seconds.

    A failing pass (e.g. "database is locked" on a shared SQLite file) is
    logged and the loop carries on with the next interval. CancelledError
    from task.cancel() during shutdown propagates out of asyncio.sleep and
    unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(interval)
        service: ResetTokenService = app.state.reset_service
        try:
            removed = await asyncio.to_thread(service.collect_garbage)
            expired = await asyncio.to_thread(service.limiter.purge_expired)
        except Exception:
            logger.exception("Sweep pass failed; retrying in %ds", interval)
            continue
        logger.info("Sweep removed %d token(s), %d rate-limit window(s)", removed, expired)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build application-level resources and release them on shutdown.

    Everything before yield runs on startup; everything after yield runs on
    shutdown.
    """
    settings = get_settings()
    logger.info("portalauth starting up")

    token_store, rate_store = build_stores(settings)
    logger.info("Stores initialized (%s)", "sql" if settings.store_url else "memory, non-persistent")

    app.state.mail_dispatcher = MailDispatcher(
        build_mailer(settings),
        max_attempts=settings.mail_max_attempts,
        backoff_seconds=settings.mail_retry_backoff_seconds,
        workers=settings.mail_workers,
    )
    app.state.reset_service = ResetTokenService(
        token_store,
        ResetRateLimiter(
            rate_store,
            max_attempts=settings.reset_max_attempts,
            window_seconds=settings.reset_window_seconds,
            normalize_keys=settings.reset_rate_limit_normalize_keys,
        ),
        dispatcher=app.state.mail_dispatcher,
        token_ttl_seconds=settings.reset_token_ttl_seconds,
        min_password_length=settings.reset_min_password_length,
    )
    app.state.backend = BackendClient(settings.backend_api_url)
    app.state.session_gate = build_gate(settings, app.state.backend)
    logger.info(
        "Gate initialized (remote_validation=%s, fail_open=%s)",
        settings.remote_token_validation,
        settings.fail_open_on_introspection_error,
    )

    app.state.sweep_task = None
    if settings.token_sweep_interval_seconds > 0:
        app.state.sweep_task = asyncio.create_task(_sweep_loop(app, settings.token_sweep_interval_seconds))

    yield

    # The sweep must be fully stopped before its stores close under it.
    if app.state.sweep_task is not None:
        app.state.sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await app.state.sweep_task
    app.state.mail_dispatcher.shutdown(wait=False)
    app.state.backend.close()
    token_store.close()
    rate_store.close()
    logger.info("portalauth shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="portalauth",
    description="Password reset and session gate for the supplier portal.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Session gate middleware
#
# Runs before routing, so no protected handler executes for an
# unauthenticated caller. See auth/gate.py for the decision order.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def session_gate(request: Request, call_next):
    gate: SessionGate | None = getattr(request.app.state, "session_gate", None)
    if gate is not None:
        early = await gate.check(request)
        if early is not None:
            return early
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Registered after session_gate, so it wraps it: gate redirects and 401s are
# logged like any other response.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Outer middleware
#
# Each registration wraps everything registered before it, so the last one
# added is outermost: TrustedHost -> CORS -> SlowAPI -> logging -> gate.
# CORS sits outside the gate so its 401s still carry CORS headers.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=_settings.allowed_hosts,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when the per-IP limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when the request body fails validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail. When detail is
    already structured, use it directly as the error field.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# On the gate's public allowlist; never throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health() -> HealthResponse:
    """Return liveness and current version."""
    return HealthResponse(version=__version__)
