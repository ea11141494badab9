"""
auth/session.py -- Signed client-side cookie session.

The whole session lives in one HTTP-only cookie: a JSON object signed (not
encrypted) with itsdangerous.URLSafeTimedSerializer. The cookie holds only
bearer JWTs, the CSRF token, the pending-MFA user id and, during MFA setup,
the unconfirmed TOTP secret -- never passwords or backup codes.

Secret rotation: SESSION_SECRETS is a list, oldest first. The newest entry
signs; every entry verifies. Drop the oldest once its cookies have aged out
(SESSION_MAX_AGE_SECONDS).

A missing, tampered, expired or undecodable cookie loads as an empty session.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field, fields
from http.cookies import CookieError, SimpleCookie
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

logger = logging.getLogger("authcore.session")

_SALT = "authcore.session"


@dataclass
class Session:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    csrf_token: Optional[str] = None
    pending_mfa_user_id: Optional[int] = None
    mfa_setup_secret: Optional[str] = None
    _loaded: dict = field(default_factory=dict, init=False, repr=False, compare=False)

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        known = {f.name for f in fields(cls) if not f.name.startswith("_")}
        session = cls(**{k: v for k, v in data.items() if k in known})
        session.mark_clean()
        return session

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if not k.startswith("_") and v is not None}

    def mark_clean(self) -> None:
        self._loaded = self.to_dict()

    def is_modified(self) -> bool:
        return self.to_dict() != self._loaded

    def is_empty(self) -> bool:
        return not self.to_dict()

    def clear_tokens(self) -> None:
        self.access_token = None
        self.refresh_token = None

    def clear(self) -> None:
        """Drop everything, including the CSRF token."""
        self.clear_tokens()
        self.csrf_token = None
        self.pending_mfa_user_id = None
        self.mfa_setup_secret = None


class SessionStore:
    """Loads sessions from a Cookie header and renders Set-Cookie values."""

    def __init__(
        self,
        secrets: list[str],
        cookie_name: str = "__session",
        max_age: int = 7 * 24 * 3600,
        secure: bool = False,
    ) -> None:
        if not secrets:
            raise ValueError("SessionStore needs at least one signing secret.")
        self.cookie_name = cookie_name
        self.max_age = max_age
        self.secure = secure
        # itsdangerous signs with the last key and tries all of them on load.
        self._serializer = URLSafeTimedSerializer(list(secrets), salt=_SALT)

    def load(self, cookie_header: Optional[str]) -> Session:
        if not cookie_header:
            return Session()
        try:
            jar = SimpleCookie()
            jar.load(cookie_header)
        except CookieError:
            return Session()
        morsel = jar.get(self.cookie_name)
        if morsel is None or not morsel.value:
            return Session()
        try:
            data = self._serializer.loads(morsel.value, max_age=self.max_age)
        except BadSignature:
            # Also covers SignatureExpired.
            logger.debug("Rejected session cookie with bad or expired signature")
            return Session()
        if not isinstance(data, dict):
            return Session()
        return Session.from_dict(data)

    def commit(self, session: Session) -> str:
        """Serialize the session into a Set-Cookie header value."""
        if session.is_empty():
            return self.destroy()
        value = self._serializer.dumps(session.to_dict())
        session.mark_clean()
        return self._cookie(value, self.max_age)

    def destroy(self) -> str:
        """A Set-Cookie value that removes the session cookie."""
        return self._cookie("", 0)

    def _cookie(self, value: str, max_age: int) -> str:
        parts = [f"{self.cookie_name}={value}", "Path=/", f"Max-Age={max_age}", "HttpOnly", "SameSite=Lax"]
        if max_age == 0:
            parts.append("Expires=Thu, 01 Jan 1970 00:00:00 GMT")
        if self.secure:
            parts.append("Secure")
        return "; ".join(parts)
