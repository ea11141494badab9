"""
auth/mfa.py -- TOTP second factor and one-time backup codes.

State machine per account:
  disabled --begin_setup--> pending-setup --confirm_setup--> enabled
  enabled  --disable--> disabled

pending-setup exists only in the caller's session: the candidate secret is
held in Session.mfa_setup_secret until a valid code proves the authenticator
app has it. Nothing is written to the user row before that.

TOTP: pyotp, 6 digits, 30 second step, +-1 step tolerance, issuer = app name.
Time comes from core.clock so tests can pin it.

Backup codes: 10 codes of 4 random bytes rendered as XXXX-XXXX. Stored as
SHA-256 of the normalized form (dashes and whitespace removed, lower-cased),
so "abcd-1234" and "ABCD1234" are the same code. Each code is consumed with a
conditional UPDATE and can validate exactly once.
"""

from __future__ import annotations

import logging
import re
import secrets
from typing import Optional

import pyotp
from sqlalchemy.engine import Connection

from auth.audit import AuditLog
from auth.crypto import hash_token, verify_password
from auth.errors import InvalidMFACodeError, ValidationError
from auth.models import BackupCodeStats, DeviceContext, MFAState, SecurityAction, User
from auth.session import Session
from auth.store import AuthStore
from auth.tokens import TokenService
from auth.transactions import with_transaction
from core import clock
from core.config import Settings

logger = logging.getLogger("authcore.mfa")

_BACKUP_CODE_RE = re.compile(r"^[0-9a-f]{8}$")


def normalize_backup_code(code: str) -> str:
    return re.sub(r"[\s-]", "", code or "").lower()


def generate_backup_codes(count: int = 10) -> list[str]:
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(4).upper()
        codes.append(f"{raw[:4]}-{raw[4:]}")
    return codes


class MFAService:
    def __init__(self, store: AuthStore, audit: AuditLog, tokens: TokenService, settings: Settings) -> None:
        self.store = store
        self.audit = audit
        self.tokens = tokens
        self.settings = settings
        self._code_re = re.compile(rf"^\d{{{settings.totp_digits}}}$")

    def _transaction(self, fn):
        return with_transaction(
            self.store.engine,
            fn,
            max_retries=self.settings.transaction_max_retries,
            backoff_seconds=self.settings.transaction_backoff_seconds,
        )

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=self.settings.totp_digits, interval=self.settings.totp_interval_seconds)

    # ------------------------------------------------------------------
    # TOTP
    # ------------------------------------------------------------------

    def generate_secret(self) -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, email: str) -> str:
        return self._totp(secret).provisioning_uri(name=email, issuer_name=self.settings.app_name)

    def verify_mfa_token(self, code: str, secret: Optional[str]) -> bool:
        """True if code is a well-formed TOTP valid within +-valid_window steps."""
        code = (code or "").strip()
        if not secret or not self._code_re.match(code):
            return False
        return self._totp(secret).verify(code, for_time=clock.utcnow(), valid_window=self.settings.totp_valid_window)

    def state(self, user: User, session: Optional[Session] = None) -> MFAState:
        if user.mfa_enabled:
            return MFAState.enabled
        if session is not None and session.mfa_setup_secret:
            return MFAState.pending_setup
        return MFAState.disabled

    # ------------------------------------------------------------------
    # Setup / disable
    # ------------------------------------------------------------------

    def begin_setup(self, user: User, session: Session) -> tuple[str, str]:
        """Hold a fresh secret in the session. Returns (secret, otpauth URI)."""
        if user.mfa_enabled:
            raise ValidationError("Two-factor authentication is already enabled.")
        secret = self.generate_secret()
        session.mfa_setup_secret = secret
        return secret, self.provisioning_uri(secret, user.email)

    def confirm_setup(self, user: User, session: Session, code: str, device: DeviceContext) -> list[str]:
        """Enable MFA if code matches the pending secret. Returns plaintext backup codes (shown once)."""
        if user.mfa_enabled:
            raise ValidationError("Two-factor authentication is already enabled.")
        secret = session.mfa_setup_secret
        if not secret:
            raise ValidationError("Start two-factor setup first.")
        if not self.verify_mfa_token(code, secret):
            raise InvalidMFACodeError()

        codes = generate_backup_codes(self.settings.backup_code_count)
        hashes = [hash_token(normalize_backup_code(c)) for c in codes]

        def _enable(conn: Connection) -> None:
            self.store.replace_backup_codes(user.id, hashes, conn=conn)
            self.store.update_user(user.id, conn=conn, mfa_enabled=True, mfa_secret=secret)
            self.audit.record(SecurityAction.mfa_enabled, user.id, device, conn=conn)

        self._transaction(_enable)
        # Only after the secret is safely persisted.
        session.mfa_setup_secret = None
        logger.info("MFA enabled user_id=%s", user.id)
        return codes

    def cancel_setup(self, session: Session) -> None:
        session.mfa_setup_secret = None

    def disable(self, user: User, password: str, device: DeviceContext) -> None:
        """Turn MFA off after password re-verification; revokes every refresh token."""
        if not verify_password(password, user.password_hash):
            raise ValidationError(fields={"password": "Password is incorrect."})

        def _disable(conn: Connection) -> None:
            self.store.update_user(user.id, conn=conn, mfa_enabled=False, mfa_secret=None)
            self.store.delete_backup_codes(user.id, conn=conn)
            self.tokens.revoke_all_user_tokens(user.id, conn=conn)
            self.audit.record(SecurityAction.mfa_disabled, user.id, device, conn=conn)

        self._transaction(_disable)
        logger.info("MFA disabled user_id=%s", user.id)

    # ------------------------------------------------------------------
    # Backup codes
    # ------------------------------------------------------------------

    def verify_backup_code(self, user_id: int, code: str, device: Optional[DeviceContext] = None) -> bool:
        """Consume a backup code. True exactly once per code."""
        normalized = normalize_backup_code(code)
        if not _BACKUP_CODE_RE.match(normalized):
            return False
        if not self.store.consume_backup_code(user_id, hash_token(normalized)):
            return False
        stats = self.backup_code_stats(user_id)
        self.audit.record(
            SecurityAction.mfa_backup_used, user_id, device or DeviceContext(), {"remaining": stats.remaining}
        )
        if stats.running_low or stats.exhausted:
            logger.info("Backup codes running low user_id=%s remaining=%d", user_id, stats.remaining)
        return True

    def backup_code_stats(self, user_id: int) -> BackupCodeStats:
        codes = self.store.list_backup_codes(user_id)
        used = sum(1 for c in codes if c.used)
        return BackupCodeStats(
            total=len(codes),
            used=used,
            remaining=len(codes) - used,
            low_threshold=self.settings.backup_codes_low_threshold,
            codes=sorted(codes, key=lambda c: (c.used, c.id)),
            created_at=codes[0].created_at if codes else None,
        )

    def regenerate_backup_codes(self, user: User, password: str, device: DeviceContext) -> list[str]:
        """Replace the whole set after password re-verification."""
        if not user.mfa_enabled:
            raise ValidationError("Two-factor authentication is not enabled.")
        if not verify_password(password, user.password_hash):
            raise ValidationError(fields={"password": "Password is incorrect."})
        codes = generate_backup_codes(self.settings.backup_code_count)
        hashes = [hash_token(normalize_backup_code(c)) for c in codes]

        def _replace(conn: Connection) -> None:
            self.store.replace_backup_codes(user.id, hashes, conn=conn)
            self.audit.record(SecurityAction.mfa_backup_regenerated, user.id, device, conn=conn)

        self._transaction(_replace)
        return codes
