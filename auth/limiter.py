"""
auth/limiter.py -- Fixed-window attempt limiter for password-reset requests.

One RateLimitEntry per identifier (the email address as submitted). The
window opens on the first attempt and closes `window` later; a request at or
after reset_time starts a fresh window with count=1.

Not to be confused with api/limiter.py, which is the slowapi per-IP limiter
applied at the HTTP layer. This one is keyed by the account identifier so an
attacker rotating IPs still hits the per-email cap.

Keys are used verbatim by default: "User@Example.com" and "user@example.com"
count separately. Set RESET_RATE_LIMIT_NORMALIZE_KEYS=true to fold case.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta

from auth.models import RateLimitDecision, RateLimitEntry
from core.clock import Clock, utcnow
from store.kv import KeyValueStore

logger = logging.getLogger("portalauth.limiter")


class ResetRateLimiter:
    def __init__(
        self,
        store: KeyValueStore[RateLimitEntry],
        max_attempts: int = 3,
        window_seconds: int = 15 * 60,
        normalize_keys: bool = False,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self.normalize_keys = normalize_keys
        self._clock = clock

    def hit(self, identifier: str) -> RateLimitDecision:
        """Count one attempt for identifier and decide whether it is allowed.

        The read-modify-write runs under the store's per-key lock so two
        concurrent requests for the same identifier cannot both read count=2
        and both write count=3.

        A denied attempt does not increment the counter.
        """
        key = identifier.strip().lower() if self.normalize_keys else identifier
        with self.store.lock(key):
            now = self._clock()
            entry = self.store.get(key)

            if entry is None or now >= entry.reset_time:
                self.store.set(key, RateLimitEntry(count=1, reset_time=now + self.window))
                return RateLimitDecision(allowed=True)

            if entry.count >= self.max_attempts:
                remaining = (entry.reset_time - now).total_seconds()
                minutes = math.ceil(remaining / 60)
                logger.info("Reset rate limit hit (%d attempts, %d min remaining)", entry.count, minutes)
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=math.ceil(remaining),
                    message=f"Too many password reset attempts. Please try again in {minutes} minutes.",
                )

            entry.count += 1
            self.store.set(key, entry)
            return RateLimitDecision(allowed=True)

    def purge_expired(self) -> int:
        """Drop entries whose window has closed. Returns number removed."""
        now = self._clock()
        return self.store.sweep(lambda entry: now >= entry.reset_time)
