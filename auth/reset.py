"""
auth/reset.py -- Password-reset token lifecycle.

ResetTokenService issues, validates, consumes and garbage-collects
single-use reset tokens, and owns the per-email limiter that throttles
issuance.

Lifecycle of one token:
  request_reset()  -> created (used=False, expires_at = now + TTL)
  validate_token() -> read only, any number of times
  reset_password() -> used=True, once, under the token's key lock
  collect_garbage() -> removed once used or expired

Error policy: every public method catches unexpected exceptions, logs them
with a traceback, and returns INTERNAL_ERROR with a generic message. Nothing
raises to the caller.

Anti-enumeration: request_reset() never consults the backend about whether
the address exists. A syntactically valid, non-throttled request always
returns the same success message, and email delivery failures are swallowed.
Only RATE_LIMITED reveals anything (the minutes until the window resets).
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import timedelta

from auth.limiter import ResetRateLimiter
from auth.mailer import MailDispatcher
from auth.models import AuthResult, ResetError, ResetToken, TokenCheck, TokenError
from auth.tokens import generate_reset_token, token_hint
from core.clock import Clock, utcnow
from store.kv import KeyValueStore

logger = logging.getLogger("portalauth.reset")

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

# Input caps. Issued tokens are 64 hex chars.
_MAX_EMAIL_LENGTH = 320
_MAX_TOKEN_LENGTH = 512

_GENERIC_SENT = "If an account with that email exists, we've sent password reset instructions."

# Backend password-update hook: (email, new_password) -> None. Raising aborts
# with INTERNAL_ERROR; the token stays used.
PasswordUpdater = Callable[[str, str], None]


def _record_password_update(email: str, new_password: str) -> None:
    logger.info("Password reset completed for %s", email)


class ResetTokenService:
    """Usage:
    service = ResetTokenService(MemoryStore(), ResetRateLimiter(MemoryStore()), dispatcher)
    result = service.request_reset("user@example.com")
    check = service.validate_token(raw)
    result = service.reset_password(raw, "new-password")
    """

    def __init__(
        self,
        tokens: KeyValueStore[ResetToken],
        limiter: ResetRateLimiter,
        dispatcher: MailDispatcher | None = None,
        password_updater: PasswordUpdater = _record_password_update,
        token_ttl_seconds: int = 15 * 60,
        min_password_length: int = 8,
        clock: Clock = utcnow,
    ) -> None:
        self.tokens = tokens
        self.limiter = limiter
        self.dispatcher = dispatcher
        self.password_updater = password_updater
        self.token_ttl = timedelta(seconds=token_ttl_seconds)
        self.min_password_length = min_password_length
        self._clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def request_reset(self, email: str | None) -> AuthResult:
        try:
            if not isinstance(email, str) or len(email) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(email):
                return AuthResult(success=False, error=ResetError.VALIDATION_ERROR, message="Invalid email format")

            decision = self.limiter.hit(email)
            if not decision.allowed:
                return AuthResult(
                    success=False,
                    error=ResetError.RATE_LIMITED,
                    message=decision.message,
                    retry_after_seconds=decision.retry_after_seconds,
                )

            raw = generate_reset_token()
            now = self._clock()
            record = ResetToken(token=raw, email=email, created_at=now, expires_at=now + self.token_ttl)
            self.tokens.set(raw, record)
            logger.info("Issued reset token %s (expires %s)", token_hint(raw), record.expires_at.isoformat())

            self._send(record)
            return AuthResult(success=True, message=_GENERIC_SENT)
        except Exception:
            logger.exception("Password reset request failed")
            return AuthResult(
                success=False,
                error=ResetError.INTERNAL_ERROR,
                message="Something went wrong. Please try again later.",
            )

    def _send(self, record: ResetToken) -> None:
        """Queue the reset email. Any failure here is logged and dropped."""
        if self.dispatcher is None:
            logger.warning("No mail dispatcher configured; reset token %s not delivered", token_hint(record.token))
            return
        try:
            self.dispatcher.submit(record.email, record.token, record.expires_at)
        except Exception:
            logger.exception("Failed to queue password reset email for token %s", token_hint(record.token))

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def validate_token(self, token: str | None) -> TokenCheck:
        """Side-effect-free redeemability check. Safe to call repeatedly."""
        try:
            check, _ = self._load(token)
            return check
        except Exception:
            logger.exception("Reset token validation failed")
            return TokenCheck(valid=False, error=TokenError.INTERNAL_ERROR, message="Unable to validate reset token.")

    @staticmethod
    def _malformed(token) -> TokenCheck | None:
        """Reject input that cannot be a stored key without touching the store."""
        if not isinstance(token, str) or not token:
            return TokenCheck(valid=False, error=TokenError.INVALID, message="Reset token is required.")
        if len(token) > _MAX_TOKEN_LENGTH:
            return TokenCheck(valid=False, error=TokenError.INVALID, message="Invalid or expired reset link.")
        return None

    def _load(self, token) -> tuple[TokenCheck, ResetToken | None]:
        """One store read. Returns the verdict and, when valid, the record it was based on."""
        bad = self._malformed(token)
        if bad is not None:
            return bad, None
        record = self.tokens.get(token)
        if record is None:
            return TokenCheck(valid=False, error=TokenError.INVALID, message="Invalid or expired reset link."), None
        if record.used:
            return TokenCheck(valid=False, error=TokenError.USED, message="This reset link has already been used."), None
        if self._clock() > record.expires_at:
            return (
                TokenCheck(
                    valid=False,
                    error=TokenError.EXPIRED,
                    message="This reset link has expired. Please request a new one.",
                ),
                None,
            )
        return TokenCheck(valid=True), record

    # ------------------------------------------------------------------
    # Redeem
    # ------------------------------------------------------------------

    def reset_password(self, token: str | None, new_password: str) -> AuthResult:
        try:
            bad = self._malformed(token)
            if bad is not None:
                # No key to lock on; report exactly as validate_token would.
                return self._token_failure(bad)

            with self.tokens.lock(token):
                check, record = self._load(token)
                if not check.valid:
                    return self._token_failure(check)
                # Weak password does not burn the token; the same link can be retried.
                if not isinstance(new_password, str) or len(new_password) < self.min_password_length:
                    return AuthResult(
                        success=False,
                        error=ResetError.WEAK_PASSWORD,
                        message=f"Password must be at least {self.min_password_length} characters long.",
                    )
                record.used = True
                self.tokens.set(token, record)

            # Outside the key lock: backend I/O and the O(n) sweep.
            self.password_updater(record.email, new_password)
            self.collect_garbage()
            return AuthResult(success=True, message="Your password has been successfully reset.")
        except Exception:
            logger.exception("Password reset failed")
            return AuthResult(
                success=False,
                error=ResetError.INTERNAL_ERROR,
                message="Failed to reset password. Please try again.",
            )

    @staticmethod
    def _token_failure(check: TokenCheck) -> AuthResult:
        code = ResetError.EXPIRED_TOKEN if check.error == TokenError.EXPIRED else ResetError.INVALID_TOKEN
        return AuthResult(success=False, error=code, message=check.message)

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def collect_garbage(self) -> int:
        """Delete every used or expired token. Returns number removed."""
        now = self._clock()
        removed = self.tokens.sweep(lambda t: t.used or now > t.expires_at)
        if removed:
            logger.info("Collected %d spent reset token(s)", removed)
        return removed

    def get_token_info(self, token: str) -> ResetToken | None:
        """Return the stored record for token, or None. Diagnostic use only."""
        if not token:
            return None
        return self.tokens.get(token)
