"""
API request and response models for the authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Password rules (registration, change, reset): 8-128 characters, at most 72
bytes once UTF-8 encoded (the bcrypt limit), with at least one lower-case
letter, one upper-case letter, one digit and one symbol. The login model
deliberately does not apply them: old passwords must still work.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

import re
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator

from auth.crypto import PASSWORD_MAX_BYTES, PASSWORD_TOO_LONG

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128

_PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "Password must contain a lower-case letter."),
    (re.compile(r"[A-Z]"), "Password must contain an upper-case letter."),
    (re.compile(r"\d"), "Password must contain a digit."),
    (re.compile(r"[^A-Za-z0-9]"), "Password must contain a symbol."),
)


def check_password_strength(value: str) -> str:
    if len(value.encode("utf-8")) > PASSWORD_MAX_BYTES:
        raise ValueError(PASSWORD_TOO_LONG)
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(value):
            raise ValueError(message)
    return value


def _check_confirmation(value: str, info: ValidationInfo, field: str) -> str:
    if field in info.data and value != info.data[field]:
        raise ValueError("Passwords do not match.")
    return value


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: EmailStr
    full_name: str = Field(min_length=1, max_length=100)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    confirm_password: str = Field(max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def password_strength(cls, v: str) -> str:
        return check_password_strength(v)

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info: ValidationInfo) -> str:
        return _check_confirmation(v, info, "password")


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: EmailStr
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class MFALoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login/mfa.

    code is a 6-digit TOTP code, or a backup code (XXXX-XXXX) when
    use_backup is true. Format is checked by the MFA engine so a malformed
    code yields the same field-level error as a wrong one.
    """

    code: str = Field(min_length=1, max_length=20)
    use_backup: bool = False


class MFACodeRequest(BaseModel):
    """Request body for POST /api/v1/auth/mfa/confirm."""

    code: str = Field(min_length=1, max_length=20)


class EmailRequest(BaseModel):
    """Request body for forgot-password and resend-verification."""

    email: EmailStr


class PasswordConfirmRequest(BaseModel):
    """Password re-verification for sensitive actions (MFA disable, account deletion)."""

    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)
    new_password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    confirm_password: str = Field(max_length=PASSWORD_MAX_LENGTH)

    @field_validator("new_password")
    @classmethod
    def new_password_strength(cls, v: str) -> str:
        return check_password_strength(v)

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info: ValidationInfo) -> str:
        return _check_confirmation(v, info, "new_password")


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=PASSWORD_MIN_LENGTH, max_length=PASSWORD_MAX_LENGTH)
    confirm_password: str = Field(max_length=PASSWORD_MAX_LENGTH)

    @field_validator("password")
    @classmethod
    def password_strength(cls, v: str) -> str:
        return check_password_strength(v)

    @field_validator("confirm_password")
    @classmethod
    def passwords_match(cls, v: str, info: ValidationInfo) -> str:
        return _check_confirmation(v, info, "password")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class CsrfResponse(BaseModel):
    """Response for GET /api/v1/auth/csrf."""

    model_config = ConfigDict(frozen=True)

    csrf_token: str


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    email: str
    email_sent: bool


class LoginStepResponse(BaseModel):
    """Outcome of a login step. Tokens never appear in bodies, only in the session cookie."""

    model_config = ConfigDict(frozen=True)

    step: str  # "mfa" or "complete"
    redirect: Optional[str] = None


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    full_name: str
    role: str
    mfa_enabled: bool


class AuthStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    authenticated: bool
    user: Optional[MeResponse] = None


class MFASetupResponse(BaseModel):
    """Secret and otpauth:// URI for the authenticator app (render as QR client-side)."""

    model_config = ConfigDict(frozen=True)

    secret: str
    otpauth_uri: str


class BackupCodesResponse(BaseModel):
    """Plaintext backup codes. Shown exactly once."""

    model_config = ConfigDict(frozen=True)

    codes: list[str]
    message: str = "Store these codes somewhere safe. Each can be used once."


class BackupCodeStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    used: int
    remaining: int
    running_low: bool
    exhausted: bool
    created_at: Optional[str] = None


class SessionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[str] = None
    current: bool = False


class SecurityLogItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    created_at: Optional[str] = None


class CleanupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    expired_refresh_tokens: int
    expired_verifications: int
    expired_resets: int
    expired_rate_limits: int
    old_security_logs: int
    timestamp: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload. fields maps input names to messages."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[dict[str, str]] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
