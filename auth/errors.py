"""
auth/errors.py -- Error taxonomy for the security core.

Every error carries a stable machine-readable code, the HTTP status the API
layer should use, a user-facing message, and optional field-level messages.
api/main.py maps AuthError to the JSON error envelope; nothing else in the
transport layer needs to know these classes.

Messages are deliberately vague where precision would help an attacker:
  - AuthenticationError never says which factor failed.
  - TokenReuseError looks exactly like an expired session to the client; the
    theft signal is only visible in the audit log and server logs.

Cryptographic and database errors are never wrapped into these classes with
their original text -- callers log the original and raise a generic error.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional


class AuthError(Exception):
    """Base class for security-core errors mapped to HTTP responses."""

    status_code: int = 400
    code: str = "auth_error"
    default_message: str = "Request could not be completed."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        fields: Optional[dict[str, str]] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.fields = fields or {}
        # Extra response headers (Retry-After, Set-Cookie) for the transport layer.
        self.headers: dict[str, str] = {}
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code


class AuthenticationError(AuthError):
    """Bad credentials or missing/invalid session (401)."""

    status_code = 401
    code = "unauthenticated"
    default_message = "Invalid email or password."


class SessionExpiredError(AuthenticationError):
    code = "session_expired"
    default_message = "Your session has expired. Please sign in again."


class TokenReuseError(SessionExpiredError):
    """A revoked refresh token was presented again.

    The client sees the same code and message as an ordinary expiry.
    """


class AuthorizationError(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "You are not allowed to do that."


class CSRFError(AuthorizationError):
    code = "csrf_failed"
    default_message = "Invalid CSRF token."


class EmailNotVerifiedError(AuthError):
    status_code = 403
    code = "email_not_verified"
    default_message = "Please verify your email before signing in."


class MFARequiredError(AuthError):
    """Password step passed (or a partial token was presented); the TOTP or
    backup-code step is still outstanding."""

    status_code = 403
    code = "mfa_required"
    default_message = "Two-factor verification required."

    def __init__(self, user_id: Optional[int] = None, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_id = user_id


class AccountLockedError(AuthError):
    status_code = 423
    code = "account_locked"

    def __init__(self, locked_until: Optional[datetime], now: Optional[datetime] = None) -> None:
        self.locked_until = locked_until
        minutes = 0
        if locked_until is not None and now is not None:
            minutes = max(1, math.ceil((locked_until - now).total_seconds() / 60))
        if minutes:
            message = f"Account temporarily locked. Try again in {minutes} minute{'s' if minutes > 1 else ''}."
        else:
            message = "Account temporarily locked. Try again later."
        super().__init__(message)


class RateLimitError(AuthError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int) -> None:
        self.retry_after = max(int(retry_after), 1)
        minutes = math.ceil(self.retry_after / 60)
        super().__init__(f"Too many attempts. Try again in {minutes} minute{'s' if minutes > 1 else ''}.")
        self.headers["Retry-After"] = str(self.retry_after)


class ValidationError(AuthError):
    """Malformed or unacceptable input; fields carries per-field messages."""

    status_code = 400
    code = "validation_error"
    default_message = "Please correct the highlighted fields."


class InvalidMFACodeError(ValidationError):
    code = "invalid_mfa_code"

    def __init__(self, message: str = "Invalid code.") -> None:
        super().__init__(fields={"code": message})


class PasswordReuseError(ValidationError):
    code = "password_reused"

    def __init__(self, field: str = "password") -> None:
        super().__init__(fields={field: "You cannot reuse one of your recent passwords."})


class InvalidTokenError(ValidationError):
    """A verification or reset token is unknown, used, or expired."""

    code = "invalid_token"
    default_message = "The link is invalid or has expired. Please request a new one."


class ConflictError(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "An account with this email already exists."


__all__ = [
    "AuthError",
    "AuthenticationError",
    "SessionExpiredError",
    "TokenReuseError",
    "AuthorizationError",
    "CSRFError",
    "EmailNotVerifiedError",
    "MFARequiredError",
    "AccountLockedError",
    "RateLimitError",
    "ValidationError",
    "InvalidMFACodeError",
    "PasswordReuseError",
    "InvalidTokenError",
    "ConflictError",
]
