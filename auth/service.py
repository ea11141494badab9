"""
auth/service.py -- AuthService: the flows a transport layer drives.

Pattern: Facade. Routes call one method per user-facing flow; the method
applies rate limits, delegates state changes to the component services, and
mutates the caller's Session. E-mail is sent only after the security
transaction has committed, and a delivery failure is logged, never raised.

Rate-limit identifiers: client IP for anonymous flows (login, register,
password_reset, email_verification), user id for account flows (mfa,
change_password). A completed login resets its login and mfa windows.

Sessions whose refresh tokens were revoked by the flow itself (password
change, MFA enable/disable) get a fresh pair in a new family, so the
current device stays signed in and never trips reuse detection.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.engine import Connection

from auth.audit import AuditLog
from auth.credentials import CredentialService
from auth.crypto import hash_token
from auth.email import EmailKind, EmailSender, SmtpEmailSender
from auth.errors import AuthenticationError, InvalidMFACodeError, InvalidTokenError
from auth.guard import AuthGuard
from auth.mfa import MFAService
from auth.models import (
    AuthenticatedUser,
    BackupCodeStats,
    CleanupResult,
    DeviceContext,
    RefreshTokenRecord,
    SecurityAction,
    SecurityLogEntry,
    User,
)
from auth.ratelimit import RateLimiter
from auth.session import Session, SessionStore
from auth.store import AuthStore
from auth.tokens import TokenService, decode_refresh_token
from auth.transactions import with_transaction
from core import clock
from core.config import Settings

logger = logging.getLogger("authcore.auth")

LOGIN_STEP_MFA = "mfa"
LOGIN_STEP_COMPLETE = "complete"


class AuthService:
    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        sessions: SessionStore,
        email: EmailSender,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sessions = sessions
        self.email = email
        self.audit = AuditLog(store)
        self.tokens = TokenService(store, self.audit, email)
        self.credentials = CredentialService(store, self.audit, self.tokens, settings)
        self.mfa = MFAService(store, self.audit, self.tokens, settings)
        self.limiter = RateLimiter(store, max_retries=settings.transaction_max_retries)
        self.guard = AuthGuard(store, self.tokens, sessions)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _notify(self, kind: EmailKind, address: str, token: Optional[str] = None) -> bool:
        try:
            self.email.send(kind, address, token)
        except Exception:
            logger.exception("Failed to send %s email", kind.value)
            return False
        return True

    def _user(self, user_id: int) -> User:
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise AuthenticationError("Please sign in to continue.")
        return user

    def _start_session(
        self, user: User, session: Session, device: DeviceContext, mfa_verified: bool, conn: Optional[Connection] = None
    ) -> None:
        tokens = self.tokens.issue(user, device, mfa_verified=mfa_verified, conn=conn)
        session.access_token = tokens.access_token
        session.refresh_token = tokens.refresh_token

    def _reissue(self, user_id: int, session: Session, device: DeviceContext) -> None:
        """Replace the session's (already revoked) tokens with a new family."""
        user = self._user(user_id)
        self._start_session(user, session, device, mfa_verified=user.mfa_enabled)

    # ------------------------------------------------------------------
    # Registration and e-mail verification
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, full_name: str, device: DeviceContext) -> tuple[User, bool]:
        """Create an account and mail its verification link.

        Returns (user, email_sent). The account exists even if sending failed.
        """
        self.limiter.check("register", device.ip)
        user, raw = self.credentials.register(email, password, full_name, device)
        sent = self._notify(EmailKind.verification, user.email, raw)
        return user, sent

    def verify_email(self, token: str, device: DeviceContext) -> int:
        return self.credentials.consume_email_verification(token, device)

    def resend_verification(self, email: str, device: DeviceContext) -> None:
        """Re-issue a verification link. Silent for unknown or verified emails."""
        self.limiter.check("email_verification", device.ip)
        user = self.store.get_user_by_email(email)
        if user is None or user.is_verified:
            return
        raw = self.credentials.create_email_verification(user.id)
        self._notify(EmailKind.verification, user.email, raw)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, session: Session, device: DeviceContext) -> str:
        """Password step. Returns LOGIN_STEP_MFA or LOGIN_STEP_COMPLETE.

        A locked account is reported as locked before the per-IP window is
        consulted, so the lockout wait time reaches the client.
        """
        self.credentials.ensure_not_locked(email, device)
        self.limiter.check("login", device.ip)
        user = self.credentials.authenticate(email, password, device)
        session.clear_tokens()
        if user.mfa_enabled:
            session.pending_mfa_user_id = user.id
            return LOGIN_STEP_MFA
        self._complete_login(user, session, device, mfa_verified=False)
        return LOGIN_STEP_COMPLETE

    def verify_mfa_login(self, code: str, session: Session, device: DeviceContext, use_backup: bool = False) -> None:
        """Second step: TOTP or backup code for the pending user."""
        user_id = session.pending_mfa_user_id
        if user_id is None:
            raise AuthenticationError("Please sign in first.")
        self.limiter.check("mfa", str(user_id))
        user = self.store.get_user_by_id(user_id)
        if user is None or not user.mfa_enabled:
            session.pending_mfa_user_id = None
            raise AuthenticationError("Please sign in first.")

        if use_backup:
            valid = self.mfa.verify_backup_code(user.id, code, device)
        else:
            valid = self.mfa.verify_mfa_token(code, user.mfa_secret)
        if not valid:
            self.audit.record(SecurityAction.login_failed, user.id, device, {"reason": "invalid_mfa_code"})
            raise InvalidMFACodeError()

        session.pending_mfa_user_id = None
        self.limiter.reset("mfa", str(user.id))
        self._complete_login(user, session, device, mfa_verified=True)

    def _complete_login(self, user: User, session: Session, device: DeviceContext, mfa_verified: bool) -> None:
        # Evaluated before this login is recorded so the current IP is not yet "known".
        suspicious = self.audit.detect_suspicious_activity(user.id, device)

        def _finish(conn: Connection) -> None:
            self.credentials.reset_failed_attempts(user.id, conn=conn)
            self._start_session(user, session, device, mfa_verified, conn=conn)
            self.audit.record(
                SecurityAction.login_success, user.id, device, {"mfa": mfa_verified} if user.mfa_enabled else None, conn=conn
            )

        with_transaction(
            self.store.engine,
            _finish,
            max_retries=self.settings.transaction_max_retries,
            backoff_seconds=self.settings.transaction_backoff_seconds,
        )
        self.limiter.reset("login", device.ip)
        logger.info("Login user_id=%s ip=%s", user.id, device.ip)
        if suspicious.suspicious:
            self._notify(EmailKind.suspicious_activity, user.email)

    def logout(self, session: Session, device: DeviceContext) -> None:
        user_id = None
        if session.refresh_token:
            payload = decode_refresh_token(session.refresh_token)
            user_id = payload["user_id"] if payload else None
            self.tokens.revoke_refresh_token(session.refresh_token)
        if user_id is not None:
            self.audit.record(SecurityAction.logout, user_id, device)
        session.clear()

    def logout_all(self, user: AuthenticatedUser, session: Session, device: DeviceContext) -> int:
        revoked = self.tokens.revoke_all_user_tokens(user.id)
        self.audit.record(SecurityAction.logout, user.id, device, {"all_sessions": True, "revoked": revoked})
        session.clear()
        return revoked

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def change_password(
        self, user_id: int, current_password: str, new_password: str, session: Session, device: DeviceContext
    ) -> None:
        self.limiter.check("change_password", str(user_id))
        self.credentials.change_password(user_id, current_password, new_password, device)
        self._reissue(user_id, session, device)

    def request_password_reset(self, email: str, device: DeviceContext) -> None:
        """Mail a reset link if the account exists. Same outcome either way."""
        self.limiter.check("password_reset", device.ip)
        user = self.store.get_user_by_email(email)
        if user is None:
            logger.info("Password reset requested for unknown email ip=%s", device.ip)
            return
        raw = self.credentials.create_password_reset(user.id)
        self.audit.record(SecurityAction.password_reset_requested, user.id, device)
        self._notify(EmailKind.password_reset, user.email, raw)

    def check_password_reset(self, token: str) -> None:
        if self.credentials.validate_password_reset(token) is None:
            raise InvalidTokenError()

    def reset_password(self, token: str, new_password: str, session: Session, device: DeviceContext) -> int:
        user_id = self.credentials.complete_password_reset(token, new_password, device)
        session.clear_tokens()
        session.pending_mfa_user_id = None
        return user_id

    # ------------------------------------------------------------------
    # MFA management
    # ------------------------------------------------------------------

    def begin_mfa_setup(self, user_id: int, session: Session) -> tuple[str, str]:
        return self.mfa.begin_setup(self._user(user_id), session)

    def confirm_mfa_setup(self, user_id: int, code: str, session: Session, device: DeviceContext) -> list[str]:
        user = self._user(user_id)
        codes = self.mfa.confirm_setup(user, session, code, device)
        # The code just proved possession of the factor; upgrade this session.
        if session.refresh_token:
            self.tokens.revoke_refresh_token(session.refresh_token)
        self._reissue(user_id, session, device)
        self._notify(EmailKind.mfa_enabled, user.email)
        return codes

    def cancel_mfa_setup(self, session: Session) -> None:
        self.mfa.cancel_setup(session)

    def disable_mfa(self, user_id: int, password: str, session: Session, device: DeviceContext) -> None:
        user = self._user(user_id)
        self.mfa.disable(user, password, device)
        self._reissue(user_id, session, device)
        self._notify(EmailKind.mfa_disabled, user.email)

    def backup_code_stats(self, user_id: int) -> BackupCodeStats:
        return self.mfa.backup_code_stats(user_id)

    def regenerate_backup_codes(self, user_id: int, password: str, device: DeviceContext) -> list[str]:
        return self.mfa.regenerate_backup_codes(self._user(user_id), password, device)

    # ------------------------------------------------------------------
    # Sessions, history, account
    # ------------------------------------------------------------------

    def list_sessions(self, user_id: int, session: Session) -> list[tuple[RefreshTokenRecord, bool]]:
        """Active refresh tokens with a flag marking the caller's own."""
        current = hash_token(session.refresh_token) if session.refresh_token else None
        return [(r, r.token_hash == current) for r in self.tokens.list_active_sessions(user_id)]

    def revoke_session(self, user_id: int, token_id: int, device: DeviceContext) -> bool:
        revoked = self.tokens.revoke_session(user_id, token_id)
        if revoked:
            self.audit.record(SecurityAction.logout, user_id, device, {"session_id": token_id})
        return revoked

    def security_history(self, user_id: int, limit: int = 20) -> list[SecurityLogEntry]:
        return self.audit.history(user_id, limit=limit)

    def delete_account(self, user_id: int, password: str, session: Session, device: DeviceContext) -> None:
        self.credentials.delete_account(user_id, password, device)
        session.clear()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup(self) -> CleanupResult:
        """Delete expired and dead rows across the security tables."""
        log_cutoff = clock.utcnow() - timedelta(days=self.settings.security_log_retention_days)
        result = CleanupResult(
            expired_refresh_tokens=self.tokens.cleanup_expired_tokens(),
            expired_verifications=self.store.delete_dead_one_time_tokens("email_verification"),
            expired_resets=self.store.delete_dead_one_time_tokens("password_reset"),
            expired_rate_limits=self.store.purge_expired_rate_limits(),
            old_security_logs=self.store.delete_security_logs_before(clock.to_iso(log_cutoff)),
            timestamp=clock.now_iso(),
        )
        logger.info(
            "Cleanup: refresh_tokens=%d verifications=%d resets=%d rate_limits=%d security_logs=%d",
            result.expired_refresh_tokens,
            result.expired_verifications,
            result.expired_resets,
            result.expired_rate_limits,
            result.old_security_logs,
        )
        return result


def build_auth_service(
    settings: Settings,
    store: Optional[AuthStore] = None,
    email: Optional[EmailSender] = None,
) -> AuthService:
    """Wire an AuthService from settings. Store and email sender are injectable for tests."""
    store = store or AuthStore(settings.database_url)
    sessions = SessionStore(
        settings.session_secrets,
        cookie_name=settings.session_cookie_name,
        max_age=settings.session_max_age_seconds,
        secure=settings.secure_cookies,
    )
    return AuthService(settings, store, sessions, email or SmtpEmailSender(settings))
