"""
auth/backend.py -- HTTP client for the external backend API.

Only two backend calls matter to the auth core:
  POST /api/third-party-auth/login  -- credential check at sign-in
  POST /api/auth/validate-token     -- bearer token introspection

Everything else the portal does against the backend is plain proxying and
lives outside this service.

Module-level requests.Session semantics as in a fetcher: one pooled session
per client, max_redirects capped at 3 (known API, protects against redirect
chains), explicit timeouts on every call.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import requests

logger = logging.getLogger("portalauth.backend")

LOGIN_PATH = "/api/third-party-auth/login"
VALIDATE_PATH = "/api/auth/validate-token"


class BackendError(Exception):
    """Base class for sign-in failures. `code` is the stable machine-readable reason."""

    code = "SERVER_ERROR"
    status_code = 502

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MissingFieldsError(BackendError):
    code = "MISSING_FIELDS"
    status_code = 400


class BackendValidationError(BackendError):
    code = "VALIDATION"
    status_code = 400


class AccountNotApprovedError(BackendError):
    code = "ACCOUNT_NOT_APPROVED"
    status_code = 403


class InvalidCredentialsError(BackendError):
    code = "INVALID_CREDENTIALS"
    status_code = 401


class BackendUnavailableError(BackendError):
    code = "NETWORK"
    status_code = 502


@dataclass
class BackendLogin:
    user_id: str
    email: str
    access_token: str
    full_name: str | None = None


class BackendClient:
    def __init__(self, base_url: str, timeout: float = 10.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.max_redirects = 3

    def login(self, email: str, password: str) -> BackendLogin:
        """Check credentials against the backend and return the identity + bearer token.

        Raises a BackendError subclass for every failure; the route layer maps
        its code/status_code straight into the response.
        """
        if not email or not password:
            raise MissingFieldsError("Email and password are required")
        try:
            resp = self._session.post(
                f"{self.base_url}{LOGIN_PATH}",
                json={"email": email, "password": password},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("Backend login unreachable: %s", e)
            raise BackendUnavailableError("Unable to reach authentication service") from e

        data = _json_or_none(resp)
        message = data.get("message") if isinstance(data, dict) else None

        if resp.status_code == 422:
            errors = (data.get("errors") if isinstance(data, dict) else None) or {}
            first = (errors.get("email") or errors.get("password") or [None])[0]
            raise BackendValidationError(first or message or "Validation failed")
        if resp.status_code == 403:
            raise AccountNotApprovedError(message or "Account pending approval")
        if resp.status_code == 401:
            raise InvalidCredentialsError(message or "Invalid email or password")
        if not resp.ok:
            raise BackendError(message or f"Login failed ({resp.status_code})")

        if not isinstance(data, dict) or not data.get("user") or not data.get("token"):
            raise BackendError("Malformed login response")

        user = data["user"]
        return BackendLogin(
            user_id=str(user.get("id", "")),
            email=user.get("email") or email,
            full_name=user.get("fullName"),
            access_token=data["token"],
        )

    def validate_token(self, access_token: str, timeout: float | None = None) -> int:
        """POST the bearer token to the introspection endpoint and return the HTTP status.

        Interpreting the status (and what to do on failure) is the caller's
        policy, not the client's. Raises requests.RequestException on network
        failure or timeout.
        """
        resp = self._session.post(
            f"{self.base_url}{VALIDATE_PATH}",
            headers={
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout or self.timeout,
        )
        return resp.status_code

    def close(self) -> None:
        self._session.close()


def _json_or_none(resp: requests.Response) -> Any:
    try:
        return resp.json() if resp.content else None
    except ValueError:
        return None
