"""
auth/credentials.py -- Credential verification, lockout, and account lifecycle.

Lockout policy (Settings): MAX_LOGIN_ATTEMPTS consecutive failures lock the
account for LOCKOUT_MINUTES. While locked, login fails before the password
is even checked. A successful login clears the counter; an expired lock is
cleared (and audited as account_unlocked) on the next attempt.

Enumeration: an unknown email still spends one bcrypt verification on a
dummy hash and returns the same AuthenticationError as a wrong password.

Password history keeps the last PASSWORD_HISTORY_COUNT hashes per user,
including the current one, and rejects any new password matching one of
them. History rows are written inside the same transaction as the password
change they describe.

Verification and reset tokens: 256-bit random values mailed to the user;
only their SHA-256 hashes are stored. Issuing a new one deletes the
previous ones. validate_* is read-only; consuming happens in the same
transaction as the effect it authorizes, via a conditional UPDATE, so a
token can only ever be spent once.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from auth.audit import AuditLog
from auth.crypto import (
    burn_password_check,
    generate_secure_token,
    hash_password,
    hash_token,
    verify_password,
)
from auth.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidTokenError,
    PasswordReuseError,
    ValidationError,
)
from auth.models import DeviceContext, OneTimeTokenRecord, SecurityAction, User
from auth.store import AuthStore
from auth.tokens import TokenService
from auth.transactions import with_transaction
from core import clock
from core.config import Settings

logger = logging.getLogger("authcore.auth")

_VERIFICATION = "email_verification"
_RESET = "password_reset"


class CredentialService:
    def __init__(self, store: AuthStore, audit: AuditLog, tokens: TokenService, settings: Settings) -> None:
        self.store = store
        self.audit = audit
        self.tokens = tokens
        self.settings = settings

    def _transaction(self, fn):
        return with_transaction(
            self.store.engine,
            fn,
            max_retries=self.settings.transaction_max_retries,
            backoff_seconds=self.settings.transaction_backoff_seconds,
        )

    # ------------------------------------------------------------------
    # Lockout state
    # ------------------------------------------------------------------

    def is_account_locked(self, user: User) -> bool:
        return user.locked_until is not None and user.locked_until > clock.utcnow()

    def increment_failed_attempts(self, user_id: int, device: Optional[DeviceContext] = None) -> bool:
        """Count one failed password attempt. Returns True if this locked the account."""
        device = device or DeviceContext()

        def _increment(conn: Connection) -> bool:
            count = self.store.increment_failed_attempts(user_id, conn=conn)
            self.audit.record(SecurityAction.login_failed, user_id, device, {"attempts": count}, conn=conn)
            if count < self.settings.max_login_attempts:
                return False
            locked_until = clock.utcnow() + timedelta(minutes=self.settings.lockout_minutes)
            self.store.update_user(user_id, conn=conn, locked_until=locked_until)
            self.audit.record(
                SecurityAction.account_locked,
                user_id,
                device,
                {"attempts": count, "locked_until": clock.to_iso(locked_until)},
                conn=conn,
            )
            return True

        locked = self._transaction(_increment)
        if locked:
            logger.warning("Account locked after repeated failures user_id=%s ip=%s", user_id, device.ip)
        return locked

    def ensure_not_locked(self, email: str, device: DeviceContext) -> None:
        """Raise AccountLockedError if email belongs to a currently locked account."""
        user = self.store.get_user_by_email(email)
        if user is None or not self.is_account_locked(user):
            return
        self.audit.record(SecurityAction.login_failed, user.id, device, {"reason": "locked"})
        raise AccountLockedError(user.locked_until, clock.utcnow())

    def reset_failed_attempts(self, user_id: int, conn: Optional[Connection] = None) -> None:
        """Clear the failure counter and lock, and stamp last_login."""
        self.store.reset_login_state(user_id, stamp_login=True, conn=conn)

    def authenticate(self, email: str, password: str, device: DeviceContext) -> User:
        """Verify email + password and return the user.

        Raises:
            AuthenticationError:   unknown email or wrong password.
            AccountLockedError:    account is locked, or this failure locked it.
            EmailNotVerifiedError: credentials are right but email is unverified.
        """
        user = self.store.get_user_by_email(email)
        if user is None:
            burn_password_check(password)
            self.audit.record(SecurityAction.login_failed, None, device, {"reason": "unknown_email"})
            raise AuthenticationError()

        now = clock.utcnow()
        if user.locked_until is not None:
            if user.locked_until > now:
                self.audit.record(SecurityAction.login_failed, user.id, device, {"reason": "locked"})
                raise AccountLockedError(user.locked_until, now)
            self.store.reset_login_state(user.id)
            self.audit.record(SecurityAction.account_unlocked, user.id, device, {"reason": "lock_expired"})
            user.failed_login_attempts = 0
            user.locked_until = None

        if not verify_password(password, user.password_hash):
            if self.increment_failed_attempts(user.id, device):
                locked = self.store.get_user_by_id(user.id)
                raise AccountLockedError(locked.locked_until if locked else None, now)
            raise AuthenticationError()

        if not user.is_verified:
            raise EmailNotVerifiedError()
        return user

    # ------------------------------------------------------------------
    # Password history
    # ------------------------------------------------------------------

    def is_password_reused(self, user_id: int, new_password: str) -> bool:
        history = self.store.get_password_history(user_id, self.settings.password_history_count)
        return any(verify_password(new_password, h) for h in history)

    def add_password_to_history(self, conn: Connection, user_id: int, password_hash: str) -> None:
        self.store.add_password_history(
            user_id, password_hash, keep=self.settings.password_history_count, conn=conn
        )

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, full_name: str, device: DeviceContext) -> tuple[User, str]:
        """Create an unverified account. Returns (user, raw verification token).

        User row, first history entry, verification token and audit row are
        written in one transaction.
        """
        email = email.strip().lower()
        password_hash = hash_password(password)

        def _register(conn: Connection) -> tuple[int, str]:
            if self.store.get_user_by_email(email, conn=conn) is not None:
                raise ConflictError(fields={"email": "An account with this email already exists."})
            user_id = self.store.create_user(
                User(email=email, password_hash=password_hash, full_name=full_name.strip()), conn=conn
            )
            self.add_password_to_history(conn, user_id, password_hash)
            raw = self._issue_one_time_token(_VERIFICATION, user_id, conn)
            self.audit.record(SecurityAction.registration_initiated, user_id, device, conn=conn)
            return user_id, raw

        try:
            user_id, raw = self._transaction(_register)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration for the same email.
            raise ConflictError(fields={"email": "An account with this email already exists."}) from exc
        logger.info("Registered user_id=%s", user_id)
        return self.store.get_user_by_id(user_id), raw

    # ------------------------------------------------------------------
    # One-time tokens (e-mail verification, password reset)
    # ------------------------------------------------------------------

    def _issue_one_time_token(self, kind: str, user_id: int, conn: Optional[Connection] = None) -> str:
        if kind == _VERIFICATION:
            ttl = timedelta(hours=self.settings.email_verification_ttl_hours)
        else:
            ttl = timedelta(minutes=self.settings.password_reset_ttl_minutes)
        raw = generate_secure_token()
        self.store.replace_one_time_token(
            kind, user_id, hash_token(raw), clock.to_iso(clock.utcnow() + ttl), conn=conn
        )
        return raw

    def create_email_verification(self, user_id: int) -> str:
        return self._issue_one_time_token(_VERIFICATION, user_id)

    def validate_email_verification(self, token: str) -> Optional[OneTimeTokenRecord]:
        if not token:
            return None
        return self.store.get_valid_one_time_token(_VERIFICATION, hash_token(token))

    def consume_email_verification(self, token: str, device: DeviceContext) -> int:
        """Spend a verification token and mark the account verified. Returns user_id."""
        if not token:
            raise InvalidTokenError()
        token_hash = hash_token(token)

        def _consume(conn: Connection) -> int:
            user_id = self.store.consume_one_time_token(_VERIFICATION, token_hash, conn=conn)
            if user_id is None:
                raise InvalidTokenError()
            self.store.update_user(user_id, conn=conn, is_verified=True)
            self.audit.record(SecurityAction.email_verified, user_id, device, conn=conn)
            return user_id

        return self._transaction(_consume)

    def create_password_reset(self, user_id: int) -> str:
        return self._issue_one_time_token(_RESET, user_id)

    def validate_password_reset(self, token: str) -> Optional[OneTimeTokenRecord]:
        if not token:
            return None
        return self.store.get_valid_one_time_token(_RESET, hash_token(token))

    def complete_password_reset(self, token: str, new_password: str, device: DeviceContext) -> int:
        """Set a new password from a reset token. Returns user_id.

        Also clears any lockout and revokes every refresh token of the user.
        """
        record = self.validate_password_reset(token)
        if record is None:
            raise InvalidTokenError()
        if self.is_password_reused(record.user_id, new_password):
            raise PasswordReuseError()
        new_hash = hash_password(new_password)
        token_hash = hash_token(token)

        def _complete(conn: Connection) -> int:
            user_id = self.store.consume_one_time_token(_RESET, token_hash, conn=conn)
            if user_id is None:
                raise InvalidTokenError()
            self.store.update_user(
                user_id, conn=conn, password_hash=new_hash, failed_login_attempts=0, locked_until=None
            )
            self.add_password_to_history(conn, user_id, new_hash)
            self.tokens.revoke_all_user_tokens(user_id, conn=conn)
            self.audit.record(SecurityAction.password_reset_completed, user_id, device, conn=conn)
            return user_id

        return self._transaction(_complete)

    # ------------------------------------------------------------------
    # Password change and account deletion
    # ------------------------------------------------------------------

    def change_password(self, user_id: int, current_password: str, new_password: str, device: DeviceContext) -> None:
        """Re-verify, check history, then update + record + revoke in one transaction."""
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise AuthenticationError()
        if not verify_password(current_password, user.password_hash):
            raise ValidationError(fields={"current_password": "Current password is incorrect."})
        if verify_password(new_password, user.password_hash):
            raise ValidationError(fields={"new_password": "New password must differ from the current one."})
        if self.is_password_reused(user_id, new_password):
            raise PasswordReuseError(field="new_password")
        new_hash = hash_password(new_password)

        def _change(conn: Connection) -> None:
            self.store.update_user(user_id, conn=conn, password_hash=new_hash)
            self.add_password_to_history(conn, user_id, new_hash)
            self.tokens.revoke_all_user_tokens(user_id, conn=conn)
            self.audit.record(SecurityAction.password_change, user_id, device, conn=conn)

        self._transaction(_change)
        logger.info("Password changed user_id=%s", user_id)

    def delete_account(self, user_id: int, password: str, device: DeviceContext) -> None:
        """Delete the user and everything they own; audit rows are kept, anonymized."""
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise AuthenticationError()
        if not verify_password(password, user.password_hash):
            raise ValidationError(fields={"password": "Password is incorrect."})

        def _delete(conn: Connection) -> None:
            self.audit.record(SecurityAction.account_deleted, user_id, device, conn=conn)
            self.store.purge_user_data(user_id, conn=conn)

        self._transaction(_delete)
        logger.info("Deleted account user_id=%s", user_id)
