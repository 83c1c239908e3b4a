"""
cache/store.py -- Short-lived cache of remote token-validation results.

Avoids calling the backend introspection endpoint on every gated request.
Each entry remembers whether a bearer token was valid and when that was
checked; entries older than `ttl` are stale and ignored.

Pruning is a plain full scan, not LRU: once the cache holds more than
`max_entries` tokens, every stale entry is dropped on the next write. A burst
of distinct fresh tokens can therefore push the size past max_entries until
they age out.

Usage:
    cache = TokenValidationCache()
    cache.get(token)          # True / False, or None when absent or stale
    cache.set(token, True)
    cache.purge_expired()     # explicit sweep, also run by set() past the cap
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from core.clock import Clock, utcnow
from store.kv import MemoryStore

_DEFAULT_TTL = 5 * 60
_DEFAULT_MAX_ENTRIES = 100


@dataclass
class ValidationEntry:
    valid: bool
    timestamp: datetime


class TokenValidationCache:
    def __init__(
        self,
        ttl: int = _DEFAULT_TTL,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
        clock: Clock = utcnow,
    ) -> None:
        self.ttl = timedelta(seconds=ttl)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: MemoryStore[ValidationEntry] = MemoryStore()

    def get(self, token: str) -> bool | None:
        """Return the cached verdict for token if present and fresh."""
        entry = self._entries.get(token)
        if entry is None:
            return None
        if self._clock() - entry.timestamp >= self.ttl:
            return None
        return entry.valid

    def set(self, token: str, valid: bool) -> None:
        """Record a verdict, then prune stale entries if the cache is over its cap."""
        self._entries.set(token, ValidationEntry(valid=valid, timestamp=self._clock()))
        if len(self._entries) > self.max_entries:
            self.purge_expired()

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number removed."""
        cutoff = self._clock() - self.ttl
        return self._entries.sweep(lambda e: e.timestamp < cutoff)

    def __len__(self) -> int:
        return len(self._entries)

    def close(self) -> None:
        self._entries.close()
