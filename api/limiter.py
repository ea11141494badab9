"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

This is a coarse per-IP flood guard in front of the public auth endpoints.
Per-action attempt windows (5 logins / 15 min and so on) are enforced by
auth/ratelimit.py, which is database-backed and always on.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

_settings = get_settings()

limiter = Limiter(
    key_func=get_remote_address,
    storage_uri="memory://",
    enabled=_settings.http_rate_limit_enabled,
)

AUTH_RATE_LIMIT = _settings.http_login_rate_limit
