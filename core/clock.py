"""
core/clock.py -- Single wall-clock source for every expiry and window check.

Lockout windows, rate-limit windows, token expiry rows and TOTP steps all read
the time through utcnow(). Tests patch core.clock.utcnow to move time without
sleeping; call sites must use clock.utcnow() (attribute lookup at call time),
never `from core.clock import utcnow`.

Stored timestamps are ISO-8601 UTC strings with fixed microsecond precision so
that lexical comparison in SQL equals chronological comparison.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime for storage (always UTC, always microseconds)."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_iso() -> str:
    return to_iso(utcnow())


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
