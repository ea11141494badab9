"""
auth/guard.py -- Per-request authentication decision.

Order of checks (authenticate_session):
  1. Silent refresh: if the access token has expired, rotate the refresh
     token (auth/tokens.py). Reuse surfaces as TokenReuseError.
  2. No access token: a pending MFA login -> MFARequiredError, otherwise
     AuthenticationError.
  3. Verify the access token; an MFA account whose token lacks
     mfa_verified is only partially authenticated -> MFARequiredError.
  4. Load the user row fresh, so deletions and edits apply immediately.
  5. Unverified email -> EmailNotVerifiedError.

The guard works on a Session object; require_auth() is the framework-neutral
entry that also loads the cookie and hands back any Set-Cookie produced by a
rotation. The FastAPI dependencies in auth/dependencies.py call
authenticate_session() directly and let middleware commit the cookie.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from auth.errors import (
    AuthenticationError,
    AuthError,
    AuthorizationError,
    EmailNotVerifiedError,
    MFARequiredError,
    SessionExpiredError,
)
from auth.models import AuthenticatedUser, DeviceContext
from auth.session import Session, SessionStore
from auth.store import AuthStore
from auth.tokens import TokenService, decode_access_token


@dataclass
class AuthResult:
    user: AuthenticatedUser
    set_cookie: Optional[str] = None


class AuthGuard:
    def __init__(self, store: AuthStore, tokens: TokenService, sessions: SessionStore) -> None:
        self.store = store
        self.tokens = tokens
        self.sessions = sessions

    def authenticate_session(self, session: Session, device: DeviceContext) -> AuthenticatedUser:
        self.tokens.refresh_session(session, device)

        if not session.access_token:
            if session.pending_mfa_user_id is not None:
                raise MFARequiredError(session.pending_mfa_user_id)
            raise AuthenticationError("Please sign in to continue.")

        claims = decode_access_token(session.access_token)
        if claims is None:
            session.clear_tokens()
            raise SessionExpiredError()
        if claims.get("mfa_verified") is False:
            raise MFARequiredError(claims["user_id"])

        user = self.store.get_user_by_id(claims["user_id"])
        if user is None:
            session.clear_tokens()
            raise SessionExpiredError()
        if user.mfa_enabled and not claims.get("mfa_verified"):
            raise MFARequiredError(user.id)
        if not user.is_verified:
            raise EmailNotVerifiedError()

        return AuthenticatedUser(
            id=user.id,
            email=user.email,
            role=user.role,
            full_name=user.full_name,
            mfa_enabled=user.mfa_enabled,
        )

    def get_optional_user(self, session: Session, device: DeviceContext) -> Optional[AuthenticatedUser]:
        try:
            return self.authenticate_session(session, device)
        except AuthError:
            return None

    def require_auth(self, cookie_header: Optional[str], device: DeviceContext) -> AuthResult:
        """Load the session from a Cookie header and authenticate it.

        On failure the raised AuthError carries a Set-Cookie header in
        exc.headers when the session changed (e.g. tokens were cleared).
        """
        session = self.sessions.load(cookie_header)
        try:
            user = self.authenticate_session(session, device)
        except AuthError as exc:
            if session.is_modified():
                exc.headers["Set-Cookie"] = self.sessions.commit(session)
            raise
        set_cookie = self.sessions.commit(session) if session.is_modified() else None
        return AuthResult(user=user, set_cookie=set_cookie)


def require_admin(user: AuthenticatedUser) -> AuthenticatedUser:
    if user.role != "admin":
        raise AuthorizationError()
    return user
