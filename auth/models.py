"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these classes own the domain shape only. Rows from
auth/store.py are mapped into these by the _row_to_* functions there.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class SecurityAction(str, Enum):
    """Audit log action names. Stored verbatim in security_logs.action."""

    login_success = "login_success"
    login_failed = "login_failed"
    logout = "logout"
    password_change = "password_change"
    password_reset_requested = "password_reset_requested"
    password_reset_completed = "password_reset_completed"
    mfa_enabled = "mfa_enabled"
    mfa_disabled = "mfa_disabled"
    mfa_backup_used = "mfa_backup_used"
    mfa_backup_regenerated = "mfa_backup_regenerated"
    email_verified = "email_verified"
    account_locked = "account_locked"
    account_unlocked = "account_unlocked"
    account_deleted = "account_deleted"
    registration_initiated = "registration_initiated"
    token_refreshed = "token_refreshed"
    token_reuse_detected = "token_reuse_detected"
    suspicious_activity = "suspicious_activity"


class MFAState(str, Enum):
    disabled = "disabled"
    pending_setup = "pending-setup"
    enabled = "enabled"


@dataclass
class User:
    """A local account. email is always stored lower-cased.

    mfa_secret is the base32 TOTP secret; it is only ever non-None once setup
    has been confirmed (unconfirmed secrets live in the session, never here).
    locked_until is None unless a lockout has been applied; an expired value
    is cleared on the next login attempt.
    """

    email: str
    password_hash: str
    full_name: str
    id: Optional[int] = None
    role: str = "user"
    is_verified: bool = False
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class RefreshTokenRecord:
    """A stored refresh token. token_hash is SHA-256 of the raw JWT; the raw
    value is never persisted. token_family groups one rotation lineage."""

    user_id: int
    token_hash: str
    token_family: str
    expires_at: str
    id: Optional[int] = None
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class OneTimeTokenRecord:
    """An e-mail verification or password reset token (hash only)."""

    user_id: int
    token_hash: str
    expires_at: str
    id: Optional[int] = None
    used: bool = False
    created_at: Optional[str] = None


@dataclass
class BackupCodeInfo:
    id: int
    used: bool
    used_at: Optional[str]
    created_at: str


@dataclass
class BackupCodeStats:
    total: int
    used: int
    remaining: int
    low_threshold: int = 3
    codes: list[BackupCodeInfo] = field(default_factory=list)
    created_at: Optional[str] = None

    @property
    def running_low(self) -> bool:
        return 0 < self.remaining <= self.low_threshold

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0


@dataclass
class SecurityLogEntry:
    action: str
    id: Optional[int] = None
    user_id: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: Optional[str] = None


@dataclass(frozen=True)
class DeviceContext:
    """Request metadata derived once per request and threaded explicitly into
    audit and token-storage calls."""

    ip: str = "unknown"
    user_agent: str = "unknown"

    @property
    def device_info(self) -> str:
        """Short human label, e.g. "Firefox · Linux · desktop"."""
        ua = self.user_agent or ""
        if "Firefox" in ua:
            browser = "Firefox"
        elif "Edg/" in ua:
            browser = "Edge"
        elif "OPR" in ua or "Opera" in ua:
            browser = "Opera"
        elif "Chrome" in ua:
            browser = "Chrome"
        elif "Safari" in ua:
            browser = "Safari"
        else:
            browser = "Unknown browser"

        if "iPhone" in ua:
            os_name = "iPhone"
        elif "iPad" in ua:
            os_name = "iPad"
        elif "Android" in ua:
            os_name = "Android"
        elif "Windows NT 10" in ua or "Windows NT 11" in ua:
            os_name = "Windows 10+"
        elif "Windows" in ua:
            os_name = "Windows"
        elif "Mac OS X" in ua:
            os_name = "macOS"
        elif "CrOS" in ua:
            os_name = "ChromeOS"
        elif "Linux" in ua:
            os_name = "Linux"
        else:
            os_name = "Unknown OS"

        kind = "mobile" if ("Mobile" in ua or "Tablet" in ua) else "desktop"
        return f"{browser} · {os_name} · {kind}"


@dataclass
class AuthTokens:
    access_token: str
    refresh_token: str
    refresh_family: str


@dataclass
class AuthenticatedUser:
    """What the auth guard hands to a route: a fresh view of the user row."""

    id: int
    email: str
    role: str
    full_name: str
    mfa_enabled: bool


@dataclass
class CleanupResult:
    expired_refresh_tokens: int
    expired_verifications: int
    expired_resets: int
    expired_rate_limits: int
    old_security_logs: int
    timestamp: str
