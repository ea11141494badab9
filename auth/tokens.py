"""
auth/tokens.py -- JWT access/refresh tokens and the refresh-token lifecycle.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry iss/aud, user id, email, role and a 15 minute expiry. Refresh
       tokens are signed with a *different* key (REFRESH_SECRET_KEY) so one
       can never be replayed as the other, and carry user_id, family, a
       random jti and the MFA-verified flag of the login that started the
       family. Decoding returns None on any failure -- callers treat that as
       "not authenticated".

  Refresh tokens are stored only as SHA-256 hashes (auth/crypto.py). The DB
       row is the source of truth for revocation; the JWT signature and exp
       are checked first so garbage never reaches the database.

  Families: a login starts a new family id; every rotation carries it over.
       Presenting a revoked refresh token again means someone holds a copy
       that was already rotated away, so every token in the family is
       revoked and the event is logged at WARNING as token_reuse_detected.

  Rotation race: the old row is claimed with a conditional UPDATE inside the
       same transaction that inserts the new row. Of two concurrent requests
       presenting the same token only one claims it; the other is treated as
       reuse (family revoked, forced re-login). There is no grace window.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta
from typing import Any, Optional

from jose import JWTError, jwt
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from auth.audit import AuditLog
from auth.crypto import hash_token
from auth.email import EmailKind, EmailSender
from auth.errors import SessionExpiredError, TokenReuseError
from auth.models import AuthTokens, DeviceContext, RefreshTokenRecord, SecurityAction, User
from auth.store import AuthStore
from auth.transactions import with_transaction
from core import clock
from core.config import get_settings

logger = logging.getLogger("authcore.tokens")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"


def _audience() -> str:
    return f"{_settings.app_name}-users"


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def create_access_token(user: User, mfa_verified: bool = False) -> str:
    """Encode a short-lived access token for the given user.

    mfa_verified is only written when the account has MFA enabled; its
    absence on an MFA account means the second step never happened.
    """
    now = clock.utcnow()
    payload: dict[str, Any] = {
        "sub": str(user.id),
        "user_id": user.id,
        "email": user.email,
        "role": user.role,
        "type": "access",
        "iss": _settings.app_name,
        "aud": _audience(),
        "iat": now,
        "exp": now + timedelta(seconds=_settings.access_token_expire_seconds),
    }
    if user.mfa_enabled:
        payload["mfa_verified"] = bool(mfa_verified)
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Verify signature, expiry, issuer and audience. None on any failure."""
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            audience=_audience(),
            issuer=_settings.app_name,
        )
    except JWTError:
        return None
    if payload.get("type") != "access" or "user_id" not in payload:
        return None
    return payload


def create_refresh_token(user_id: int, family: str, mfa_verified: bool = False) -> str:
    now = clock.utcnow()
    payload = {
        "user_id": user_id,
        "type": "refresh",
        "family": family,
        "jti": uuid.uuid4().hex,
        "mfa": bool(mfa_verified),
        "iss": _settings.app_name,
        "iat": now,
        "exp": now + timedelta(days=_settings.refresh_token_expire_days),
    }
    return jwt.encode(payload, _settings.refresh_secret_key, algorithm=_ALGORITHM)


def decode_refresh_token(token: str) -> dict | None:
    try:
        payload = jwt.decode(
            token,
            _settings.refresh_secret_key,
            algorithms=[_ALGORITHM],
            issuer=_settings.app_name,
        )
    except JWTError:
        return None
    if payload.get("type") != "refresh" or "user_id" not in payload or "family" not in payload:
        return None
    return payload


def generate_tokens(user: User, mfa_verified: bool = False, family: Optional[str] = None) -> AuthTokens:
    """Issue an access/refresh pair. A new family is started unless one is given."""
    family = family or uuid.uuid4().hex
    return AuthTokens(
        access_token=create_access_token(user, mfa_verified=mfa_verified),
        refresh_token=create_refresh_token(user.id, family, mfa_verified=mfa_verified),
        refresh_family=family,
    )


# ---------------------------------------------------------------------------
# Refresh-token lifecycle
# ---------------------------------------------------------------------------


class TokenService:
    """Stores, validates, rotates and revokes refresh tokens."""

    def __init__(self, store: AuthStore, audit: AuditLog, email: Optional[EmailSender] = None) -> None:
        self.store = store
        self.audit = audit
        self.email = email

    def _transaction(self, fn):
        return with_transaction(
            self.store.engine,
            fn,
            max_retries=_settings.transaction_max_retries,
            backoff_seconds=_settings.transaction_backoff_seconds,
        )

    def store_refresh_token(
        self,
        user_id: int,
        raw: str,
        device: DeviceContext,
        family: str,
        conn: Optional[Connection] = None,
    ) -> int:
        """Persist the hash of a refresh token. The row expires with the JWT."""
        expires_at = clock.utcnow() + timedelta(days=_settings.refresh_token_expire_days)
        return self.store.insert_refresh_token(
            RefreshTokenRecord(
                user_id=user_id,
                token_hash=hash_token(raw),
                token_family=family,
                expires_at=clock.to_iso(expires_at),
                device_info=device.device_info,
                ip_address=device.ip,
            ),
            conn=conn,
        )

    def issue(
        self,
        user: User,
        device: DeviceContext,
        mfa_verified: bool = False,
        conn: Optional[Connection] = None,
    ) -> AuthTokens:
        """Start a new family for user and store its first refresh token."""
        tokens = generate_tokens(user, mfa_verified=mfa_verified)
        self.store_refresh_token(user.id, tokens.refresh_token, device, tokens.refresh_family, conn=conn)
        return tokens

    def validate_refresh_token(self, user_id: int, raw: str) -> bool:
        record = self.store.get_refresh_token(hash_token(raw))
        if record is None or record.user_id != user_id or record.revoked:
            return False
        return clock.from_iso(record.expires_at) > clock.utcnow()

    def detect_token_reuse(self, user_id: int, raw: str, device: Optional[DeviceContext] = None) -> bool:
        """Return True (after revoking the whole family) if raw was already revoked."""
        record = self.store.get_refresh_token(hash_token(raw))
        if record is None or record.user_id != user_id or not record.revoked:
            return False
        self._revoke_family_for_reuse(record.user_id, record.token_family, device or DeviceContext())
        return True

    def _revoke_family_for_reuse(self, user_id: int, family: str, device: DeviceContext) -> None:
        revoked = self.store.revoke_token_family(user_id, family)
        logger.warning(
            "Refresh token reuse detected user_id=%s family=%s ip=%s live_tokens_revoked=%d",
            user_id,
            family,
            device.ip,
            revoked,
        )
        self.audit.record(
            SecurityAction.token_reuse_detected,
            user_id,
            device,
            {"family": family, "revoked_tokens": revoked},
        )
        # Only alert when a live descendant existed: a stale token replayed
        # after an ordinary logout revokes nothing.
        if revoked and self.email is not None:
            user = self.store.get_user_by_id(user_id)
            if user is not None:
                try:
                    self.email.send(EmailKind.suspicious_activity, user.email)
                except Exception:
                    logger.exception("Failed to send token reuse notification to user_id=%s", user_id)

    def revoke_refresh_token(self, raw: str) -> bool:
        return self.store.revoke_refresh_token(hash_token(raw))

    def revoke_all_user_tokens(self, user_id: int, conn: Optional[Connection] = None) -> int:
        return self.store.revoke_all_user_tokens(user_id, conn=conn)

    def cleanup_expired_tokens(self) -> int:
        """Delete expired tokens and tokens revoked longer ago than the retention window."""
        cutoff = clock.utcnow() - timedelta(days=_settings.revoked_token_retention_days)
        return self.store.delete_stale_refresh_tokens(clock.to_iso(cutoff))

    def list_active_sessions(self, user_id: int) -> list[RefreshTokenRecord]:
        return self.store.list_active_refresh_tokens(user_id)

    def revoke_session(self, user_id: int, token_id: int) -> bool:
        return self.store.revoke_refresh_token_by_id(user_id, token_id)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, raw: str, device: DeviceContext) -> AuthTokens:
        """Exchange a refresh token for a new pair in the same family.

        Raises:
            TokenReuseError:     raw was already revoked, or a concurrent
                                 request rotated it first. Family revoked.
            SessionExpiredError: raw is invalid, expired, unknown, or its
                                 user no longer exists.
        """
        payload = decode_refresh_token(raw)
        if payload is None:
            raise SessionExpiredError()
        user_id = payload["user_id"]
        family = payload["family"]

        if self.detect_token_reuse(user_id, raw, device):
            raise TokenReuseError()
        if not self.validate_refresh_token(user_id, raw):
            raise SessionExpiredError()
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise SessionExpiredError()

        tokens = generate_tokens(user, mfa_verified=bool(payload.get("mfa")), family=family)
        old_hash = hash_token(raw)

        def _swap(conn: Connection) -> bool:
            if not self.store.claim_refresh_token(old_hash, conn=conn):
                return False
            self.store_refresh_token(user.id, tokens.refresh_token, device, family, conn=conn)
            self.audit.record(SecurityAction.token_refreshed, user.id, device, {"family": family}, conn=conn)
            return True

        if not self._transaction(_swap):
            # Lost the claim: another request already rotated this token.
            self._revoke_family_for_reuse(user.id, family, device)
            raise TokenReuseError()
        logger.debug("Rotated refresh token user_id=%s family=%s", user.id, family)
        return tokens

    def refresh_session(self, session, device: DeviceContext) -> bool:
        """Silently rotate the session's tokens when the access token has expired.

        Returns True if the session now holds a new pair. On any failure both
        tokens are removed from the session; reuse is re-raised so the caller
        can surface it (as an ordinary expired session).
        """
        if not session.access_token or not session.refresh_token:
            return False
        if decode_access_token(session.access_token) is not None:
            return False
        try:
            tokens = self.rotate(session.refresh_token, device)
        except TokenReuseError:
            session.clear_tokens()
            raise
        except SessionExpiredError:
            session.clear_tokens()
            return False
        except SQLAlchemyError as exc:
            logger.exception("Database error during token rotation")
            session.clear_tokens()
            raise SessionExpiredError() from exc
        session.access_token = tokens.access_token
        session.refresh_token = tokens.refresh_token
        return True
