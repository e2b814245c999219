"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the login routes
of api/routes/v1/auth.py and web/routes.py (per-route @limiter.limit()).

This is the per-IP outer limit. The per-session fixed window in
security/rate_limit.py runs inside the handler through the access gate.
A single shared instance means every route shares the same in-memory
counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
