"""
auth/ratelimit.py -- Fixed-window attempt counters keyed by action:identifier.

A window opens on the first attempt and lasts window_seconds. Each check()
inside the window adds a point; once max_attempts points exist the next
check() raises RateLimitError with the window's remaining lifetime. When the
window expires the row is purged (opportunistically, on every check) and the
next attempt opens a fresh window.

The identifier is the client IP for anonymous actions (login, register,
password_reset, email_verification) and the user id for actions tied to an
account (mfa, change_password).

This limiter is always on and database-backed so it holds across workers.
The coarse per-IP slowapi throttle in api/limiter.py is a separate layer.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.errors import RateLimitError
from auth.store import AuthStore
from auth.transactions import is_retryable_db_error, with_transaction
from core import clock

logger = logging.getLogger("authcore.ratelimit")


@dataclass(frozen=True)
class RateLimitRule:
    max_attempts: int
    window_seconds: int


RATE_LIMITS: dict[str, RateLimitRule] = {
    "login": RateLimitRule(max_attempts=5, window_seconds=900),
    "register": RateLimitRule(max_attempts=3, window_seconds=3600),
    "password_reset": RateLimitRule(max_attempts=3, window_seconds=3600),
    "mfa": RateLimitRule(max_attempts=5, window_seconds=300),
    "email_verification": RateLimitRule(max_attempts=5, window_seconds=3600),
    "change_password": RateLimitRule(max_attempts=3, window_seconds=3600),
}


def _is_retryable(exc: BaseException) -> bool:
    # Two first attempts racing to open the same window: the loser re-runs
    # and finds the winner's row.
    return isinstance(exc, IntegrityError) or is_retryable_db_error(exc)


class RateLimiter:
    def __init__(self, store: AuthStore, max_retries: int = 3) -> None:
        self.store = store
        self.max_retries = max_retries

    @staticmethod
    def _key(action: str, identifier: str) -> str:
        if action not in RATE_LIMITS:
            raise KeyError(f"Unknown rate-limit action: {action!r}")
        return f"{action}:{identifier}"

    def check(self, action: str, identifier: str) -> None:
        """Record one attempt, or raise RateLimitError if the window is full."""
        key = self._key(action, identifier)
        rule = RATE_LIMITS[action]

        def _attempt(conn: Connection) -> None:
            self.store.purge_expired_rate_limits(conn=conn)
            existing = self.store.get_rate_limit(key, conn=conn)
            now = clock.utcnow()
            if existing is None:
                expire_at = clock.to_iso(now + timedelta(seconds=rule.window_seconds))
                self.store.open_rate_limit_window(key, expire_at, conn=conn)
                return
            points, expire_at = existing
            if points >= rule.max_attempts:
                remaining = (clock.from_iso(expire_at) - now).total_seconds()
                raise RateLimitError(max(math.ceil(remaining), 1))
            self.store.add_rate_limit_point(key, conn=conn)

        try:
            with_transaction(self.store.engine, _attempt, max_retries=self.max_retries, is_retryable=_is_retryable)
        except RateLimitError as exc:
            logger.info("Rate limit hit key=%s retry_after=%ss", key, exc.retry_after)
            raise

    def reset(self, action: str, identifier: str) -> None:
        self.store.delete_rate_limit(self._key(action, identifier))

    def remaining(self, action: str, identifier: str) -> int:
        existing = self.store.get_rate_limit(self._key(action, identifier))
        rule = RATE_LIMITS[action]
        if existing is None:
            return rule.max_attempts
        return max(0, rule.max_attempts - existing[0])
