"""
core/clock.py -- Time source shared by the stores and services.

Every component that reasons about expiry takes a `clock` callable instead of
calling datetime.now() inline, so tests can drive time deterministically.
"""

from collections.abc import Callable
from datetime import datetime, timezone

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)
