"""
api/limiter.py -- Shared slowapi rate limiter instance (per client IP).

Import this in both api/main.py (to mount as middleware) and
api/routes/auth.py (to apply per-route limits with @limiter.limit()).

A single shared instance keeps one in-memory counter store. This sits in
front of the per-email limiter in auth/limiter.py: slowapi caps how fast one
IP can hammer the reset endpoint across many addresses, the per-email limiter
caps how many reset mails one address can receive.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
