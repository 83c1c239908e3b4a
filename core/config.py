"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for portalauth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). List fields are parsed from JSON.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates a session secret with a warning,
      production mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session tokens
       are HS256 JWTs and rely on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Every instance must share the same key or
       sessions issued by one instance are rejected by the others.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
cache/, or store/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("portalauth.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Shared session-signing secret. "" is the "not configured" sentinel;
    # the validator below either generates a dev key or raises.
    secret_key: str = ""
    app_url: str = "http://localhost:3000"
    backend_api_url: str = "http://127.0.0.1:8000"
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "session_token"
    session_expire_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    # Empty string keeps the process-local in-memory stores. Any SQLAlchemy
    # URL switches reset tokens and rate-limit counters to store/sql.py.
    store_url: str = ""

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    reset_token_ttl_seconds: int = 15 * 60
    reset_token_bytes: int = 32
    reset_min_password_length: int = 8
    reset_max_attempts: int = 3
    reset_window_seconds: int = 15 * 60
    # Declared only. The limiter never applies it; see DESIGN.md.
    reset_block_duration_seconds: int = 60 * 60
    reset_rate_limit_normalize_keys: bool = False
    reset_request_ip_limit: str = "10/minute"
    # 0 disables the background sweep; tokens are then only collected after
    # a successful redemption.
    token_sweep_interval_seconds: int = 0

    # ------------------------------------------------------------------
    # Remote token validation (introspection)
    # ------------------------------------------------------------------

    remote_token_validation: bool = False
    fail_open_on_introspection_error: bool = True
    token_validation_cache_seconds: int = 5 * 60
    token_validation_cache_max_entries: int = 100
    token_validation_timeout_seconds: float = 3.0

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    public_api_routes: list[str] = [
        "/api/v1/countries",
        "/api/third-party-details",
        "/api/currencies",
        "/api/third-party-auth",
        "/api/v1/health",
    ]

    # ------------------------------------------------------------------
    # Mail delivery
    # ------------------------------------------------------------------

    # Empty host means demo mode: the reset link is logged, not mailed.
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_ssl: bool = False
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@localhost"
    smtp_timeout: float = 10.0
    mail_max_attempts: int = 3
    mail_retry_backoff_seconds: float = 2.0
    mail_workers: int = 2

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if self.reset_token_bytes < 32:
            raise ValueError("RESET_TOKEN_BYTES must be at least 32.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
