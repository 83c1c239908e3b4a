"""
auth/mailer.py -- Password-reset email composition and queued delivery.

Two pieces:
  ResetMailer   -- sends one message. LogResetMailer (demo mode: logs the
                   link) and SmtpResetMailer (smtplib) implement it.
  MailDispatcher -- hands messages to a thread pool and retries failures
                   with linear backoff. The reset request returns as soon as
                   the message is queued; delivery outcome never reaches the
                   requester, so the response is identical whether or not
                   the address belongs to an account.

Failures are logged at WARNING per attempt and ERROR after the last attempt.
Neither the dispatcher nor the mailers ever log the full token.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
import time
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from typing import Protocol

from auth.tokens import token_hint
from core.config import Settings

logger = logging.getLogger("portalauth.mail")


class ResetMailer(Protocol):
    def send_reset(self, email: str, token: str, expires_at: datetime) -> None: ...


def reset_link(app_url: str, token: str) -> str:
    return f"{app_url.rstrip('/')}/reset-password?token={token}"


def build_reset_email(
    *,
    from_addr: str,
    to_addr: str,
    link: str,
    expires_at: datetime,
) -> EmailMessage:
    """Create the plain text reset message."""
    message = EmailMessage()
    message["Subject"] = "Reset your password"
    message["From"] = from_addr
    message["To"] = to_addr
    message["Date"] = formatdate(localtime=True)
    # Automated mail: suppress out-of-office replies and responder loops.
    message["Auto-Submitted"] = "auto-generated"
    message["X-Auto-Response-Suppress"] = "All"
    domain = from_addr.split("@", 1)[1] if "@" in from_addr else None
    message["Message-ID"] = make_msgid(domain=domain)
    message.set_content(
        "We received a request to reset the password for this address.\n\n"
        "If you made this request, open the link below to choose a new password:\n\n"
        f"{link}\n\n"
        f"The link expires at {expires_at:%Y-%m-%d %H:%M} UTC and can be used once. "
        "If you did not request a password reset, you can safely ignore this email.\n"
    )
    return message


class LogResetMailer:
    """Demo-mode mailer: writes the reset link to the log instead of sending it."""

    def __init__(self, app_url: str) -> None:
        self.app_url = app_url

    def send_reset(self, email: str, token: str, expires_at: datetime) -> None:
        logger.info(
            "Password reset email (demo) to=%s link=%s expires=%s",
            email,
            reset_link(self.app_url, token),
            expires_at.isoformat(),
        )


class SmtpResetMailer:
    """Deliver reset emails over SMTP (implicit TLS or STARTTLS)."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def send_reset(self, email: str, token: str, expires_at: datetime) -> None:
        s = self.settings
        message = build_reset_email(
            from_addr=s.smtp_from,
            to_addr=email,
            link=reset_link(s.app_url, token),
            expires_at=expires_at,
        )
        context = ssl.create_default_context()
        if s.smtp_ssl:
            with smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout, context=context) as server:
                self._deliver(server, message)
        else:
            with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout) as server:
                server.starttls(context=context)
                self._deliver(server, message)

    def _deliver(self, server: smtplib.SMTP, message: EmailMessage) -> None:
        if self.settings.smtp_user:
            server.login(self.settings.smtp_user, self.settings.smtp_password)
        server.send_message(message)


def build_mailer(settings: Settings) -> ResetMailer:
    """Pick SMTP when a host is configured, demo logging otherwise."""
    if settings.smtp_host:
        return SmtpResetMailer(settings)
    logger.warning("SMTP_HOST not set -- reset links will be logged, not emailed")
    return LogResetMailer(settings.app_url)


class MailDispatcher:
    """Queue reset emails for background delivery with retries.

    Usage:
        dispatcher = MailDispatcher(build_mailer(settings))
        dispatcher.submit("user@example.com", token, expires_at)
        ...
        dispatcher.shutdown()
    """

    def __init__(
        self,
        mailer: ResetMailer,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        workers: int = 2,
        executor: Executor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.mailer = mailer
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._executor = executor or ThreadPoolExecutor(max_workers=workers, thread_name_prefix="mail")
        self._sleep = sleep

    def submit(self, email: str, token: str, expires_at: datetime) -> Future:
        """Queue one reset email. Raises RuntimeError if the dispatcher is shut down."""
        return self._executor.submit(self._deliver, email, token, expires_at)

    def _deliver(self, email: str, token: str, expires_at: datetime) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.mailer.send_reset(email, token, expires_at)
                return True
            except Exception as exc:
                logger.warning(
                    "Reset email attempt %d/%d failed for token %s: %s",
                    attempt,
                    self.max_attempts,
                    token_hint(token),
                    exc,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.backoff_seconds * attempt)
        logger.error("Giving up on reset email for token %s after %d attempts", token_hint(token), self.max_attempts)
        return False

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
