"""
api/routes/v1/auth.py -- Authentication and account security REST endpoints.

Routes:
  GET    /api/v1/auth/csrf                        -- CSRF token for this session (public)
  POST   /api/v1/auth/register                    -- create account, mail verification link
  GET    /api/v1/auth/verify-email?token=         -- consume a verification link
  POST   /api/v1/auth/verify-email/resend         -- re-send the verification link
  POST   /api/v1/auth/login                       -- password step; may ask for MFA
  POST   /api/v1/auth/login/mfa                   -- TOTP or backup code step
  POST   /api/v1/auth/logout                      -- revoke this session's refresh token
  POST   /api/v1/auth/logout-all                  -- revoke every refresh token (requires auth)
  GET    /api/v1/auth/me                          -- current user (requires auth)
  GET    /api/v1/auth/status                      -- {authenticated, user?} (public)
  POST   /api/v1/auth/password/change             -- change password (requires auth)
  POST   /api/v1/auth/password/forgot             -- mail a reset link
  GET    /api/v1/auth/password/reset?token=       -- check a reset link before showing a form
  POST   /api/v1/auth/password/reset              -- complete a reset
  POST   /api/v1/auth/mfa/setup                   -- start TOTP setup (requires auth)
  DELETE /api/v1/auth/mfa/setup                   -- abandon TOTP setup (requires auth)
  POST   /api/v1/auth/mfa/confirm                 -- enable MFA, returns backup codes once
  POST   /api/v1/auth/mfa/disable                 -- disable MFA (password re-check)
  GET    /api/v1/auth/mfa/backup-codes            -- backup code counts
  POST   /api/v1/auth/mfa/backup-codes/regenerate -- new codes (password re-check)
  GET    /api/v1/auth/sessions                    -- active refresh tokens (requires auth)
  DELETE /api/v1/auth/sessions/{id}               -- revoke one of them (ownership checked)
  GET    /api/v1/auth/security-log                -- recent audit events (requires auth)
  POST   /api/v1/auth/account/delete              -- delete account (password re-check)
  POST   /api/v1/auth/admin/cleanup               -- purge expired rows (admin only)

Security:
  Every state-changing route depends on require_csrf (X-CSRF-Token header or
  _csrf form field). GET /auth/csrf issues the token.
  Tokens live only in the signed session cookie; no response body carries an
  access or refresh token. The commit_session middleware writes the cookie.
  Public POST endpoints carry the coarse slowapi throttle; the per-action
  windows (5 logins / 15 min and so on) are enforced inside AuthService.
  Cache-Control: no-store is set on every /auth response by middleware.
  IDOR guard: DELETE /sessions/{id} passes user_id to the store; the WHERE
  clause requires both to match.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    AuthStatusResponse,
    BackupCodesResponse,
    BackupCodeStatsResponse,
    ChangePasswordRequest,
    CleanupResponse,
    CsrfResponse,
    EmailRequest,
    LoginRequest,
    LoginStepResponse,
    MeResponse,
    MessageResponse,
    MFACodeRequest,
    MFALoginRequest,
    MFASetupResponse,
    PasswordConfirmRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SecurityLogItem,
    SessionInfo,
)
from auth.csrf import get_csrf_token
from auth.dependencies import (
    get_auth_service,
    get_current_user,
    get_device_context,
    get_optional_user,
    get_session,
    redirect_if_authenticated,
    require_admin,
    require_csrf,
)
from auth.models import AuthenticatedUser, DeviceContext
from auth.service import LOGIN_STEP_COMPLETE, AuthService
from auth.session import Session

# Auth policy:
# - GET  csrf, status, verify-email, password/reset:   public
# - POST register, login:                               public + CSRF, redirect if signed in
# - POST login/mfa, verify-email/resend, password/*:    public + CSRF
# - POST logout:                                        CSRF only (clearing needs no auth)
# - everything else:                                    get_current_user (+ CSRF if it writes)
# - POST admin/cleanup:                                 require_admin + CSRF
router = APIRouter()

_CSRF = [Depends(require_csrf)]


def _me(user: AuthenticatedUser) -> MeResponse:
    return MeResponse(
        id=user.id,
        email=user.email,
        full_name=user.full_name,
        role=user.role,
        mfa_enabled=user.mfa_enabled,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/csrf", response_model=CsrfResponse)
def csrf_token(session: Session = Depends(get_session)) -> CsrfResponse:
    """Return the session's CSRF token, creating it on first use."""
    return CsrfResponse(csrf_token=get_csrf_token(session))


@router.get("/auth/status", response_model=AuthStatusResponse)
def auth_status(user: AuthenticatedUser | None = Depends(get_optional_user)) -> AuthStatusResponse:
    """Report whether this session is fully signed in. Never raises for anonymous callers."""
    if user is None:
        return AuthStatusResponse(authenticated=False)
    return AuthStatusResponse(authenticated=True, user=_me(user))


@limiter.limit(AUTH_RATE_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post(
    "/auth/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[*_CSRF, Depends(redirect_if_authenticated)],
)
def register(
    request: Request,
    body: RegisterRequest,
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> RegisterResponse:
    """Create an unverified account and mail the verification link.

    Duplicate e-mail is a 409 with a field error on email. If the mail could
    not be sent the account still exists; email_sent tells the client to
    offer "resend".
    """
    user, sent = service.register(body.email, body.password, body.full_name, device)
    return RegisterResponse(
        message="Account created. Check your inbox to verify your e-mail address.",
        email=user.email,
        email_sent=sent,
    )


@router.get("/auth/verify-email", response_model=MessageResponse)
def verify_email(
    token: str = Query(min_length=1, max_length=128),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Consume the link from the verification e-mail. Single use."""
    service.verify_email(token, device)
    return MessageResponse(message="E-mail verified. You can now sign in.")


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/verify-email/resend", response_model=MessageResponse, dependencies=_CSRF)
def resend_verification(
    request: Request,
    body: EmailRequest,
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Same answer whether or not the address exists or is already verified."""
    service.resend_verification(body.email, device)
    return MessageResponse(message="If that account needs verification, a new link is on its way.")


@limiter.limit(AUTH_RATE_LIMIT)
@router.post(
    "/auth/login",
    response_model=LoginStepResponse,
    dependencies=[*_CSRF, Depends(redirect_if_authenticated)],
)
def login(
    request: Request,
    body: LoginRequest,
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> LoginStepResponse:
    """Password step.

    Unknown e-mail and wrong password produce the same 401. When the account
    has MFA enabled the response is step="mfa" and the session remembers the
    pending user; otherwise tokens are issued into the session cookie.
    """
    step = service.login(body.email, body.password, session, device)
    if step == LOGIN_STEP_COMPLETE:
        return LoginStepResponse(step=step, redirect=service.settings.post_login_redirect)
    return LoginStepResponse(step=step)


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/login/mfa", response_model=LoginStepResponse, dependencies=_CSRF)
def login_mfa(
    request: Request,
    body: MFALoginRequest,
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> LoginStepResponse:
    """Second step. A wrong code is a 400 with a field error on code."""
    service.verify_mfa_login(body.code, session, device, use_backup=body.use_backup)
    return LoginStepResponse(step=LOGIN_STEP_COMPLETE, redirect=service.settings.post_login_redirect)


@router.post("/auth/logout", response_model=MessageResponse, dependencies=_CSRF)
def logout(
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Revoke this session's refresh token and clear the cookie."""
    service.logout(session, device)
    return MessageResponse(message="Signed out.")


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/password/forgot", response_model=MessageResponse, dependencies=_CSRF)
def forgot_password(
    request: Request,
    body: EmailRequest,
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Mail a reset link. The response never reveals whether the account exists."""
    service.request_password_reset(body.email, device)
    return MessageResponse(message="If an account exists for that address, a reset link is on its way.")


@router.get("/auth/password/reset", response_model=MessageResponse)
def check_reset_token(
    token: str = Query(min_length=1, max_length=128),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.check_password_reset(token)
    return MessageResponse(message="Reset link is valid.")


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/password/reset", response_model=MessageResponse, dependencies=_CSRF)
def reset_password(
    request: Request,
    body: ResetPasswordRequest,
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Complete a reset. Every refresh token of the account is revoked; sign in again."""
    service.reset_password(body.token, body.password, session, device)
    return MessageResponse(message="Password updated. Please sign in with your new password.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: AuthenticatedUser = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return _me(current_user)


@router.post("/auth/logout-all", response_model=MessageResponse, dependencies=_CSRF)
def logout_all(
    current_user: AuthenticatedUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    revoked = service.logout_all(current_user, session, device)
    return MessageResponse(message=f"Signed out of {revoked} session(s).")


@router.post("/auth/password/change", response_model=MessageResponse, dependencies=_CSRF)
def change_password(
    body: ChangePasswordRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Change password. Other sessions are signed out; this one gets fresh tokens."""
    service.change_password(current_user.id, body.current_password, body.new_password, session, device)
    return MessageResponse(message="Password changed. Other sessions have been signed out.")


# ---------------------------------------------------------------------------
# MFA management
# ---------------------------------------------------------------------------


@router.post("/auth/mfa/setup", response_model=MFASetupResponse, dependencies=_CSRF)
def mfa_setup(
    current_user: AuthenticatedUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    service: AuthService = Depends(get_auth_service),
) -> MFASetupResponse:
    """Generate a TOTP secret, held in the session until confirmed.

    The client renders otpauth_uri as a QR code.
    """
    secret, uri = service.begin_mfa_setup(current_user.id, session)
    return MFASetupResponse(secret=secret, otpauth_uri=uri)


@router.delete("/auth/mfa/setup", status_code=204, dependencies=_CSRF)
def mfa_setup_cancel(
    current_user: AuthenticatedUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    service.cancel_mfa_setup(session)
    return Response(status_code=204)


@router.post("/auth/mfa/confirm", response_model=BackupCodesResponse, dependencies=_CSRF)
def mfa_confirm(
    body: MFACodeRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> BackupCodesResponse:
    """Enable MFA with a code from the authenticator. The backup codes are shown ONCE."""
    codes = service.confirm_mfa_setup(current_user.id, body.code, session, device)
    return BackupCodesResponse(codes=codes)


@router.post("/auth/mfa/disable", response_model=MessageResponse, dependencies=_CSRF)
def mfa_disable(
    body: PasswordConfirmRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    service.disable_mfa(current_user.id, body.password, session, device)
    return MessageResponse(message="Two-factor authentication disabled.")


@router.get("/auth/mfa/backup-codes", response_model=BackupCodeStatsResponse)
def backup_code_stats(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> BackupCodeStatsResponse:
    """Counts only. Plaintext codes are never retrievable after they are shown."""
    stats = service.backup_code_stats(current_user.id)
    return BackupCodeStatsResponse(
        total=stats.total,
        used=stats.used,
        remaining=stats.remaining,
        running_low=stats.running_low,
        exhausted=stats.exhausted,
        created_at=stats.created_at,
    )


@router.post("/auth/mfa/backup-codes/regenerate", response_model=BackupCodesResponse, dependencies=_CSRF)
def regenerate_backup_codes(
    body: PasswordConfirmRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> BackupCodesResponse:
    codes = service.regenerate_backup_codes(current_user.id, body.password, device)
    return BackupCodesResponse(codes=codes)


# ---------------------------------------------------------------------------
# Sessions, history, account
# ---------------------------------------------------------------------------


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(
    current_user: AuthenticatedUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    service: AuthService = Depends(get_auth_service),
) -> list[SessionInfo]:
    return [
        SessionInfo(
            id=record.id,
            device_info=record.device_info,
            ip_address=record.ip_address,
            created_at=record.created_at,
            current=is_current,
        )
        for record, is_current in service.list_sessions(current_user.id, session)
    ]


@router.delete("/auth/sessions/{session_id}", status_code=204, dependencies=_CSRF)
def revoke_session(
    session_id: int,
    current_user: AuthenticatedUser = Depends(get_current_user),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> Response:
    """Revoke one refresh token. Ownership is verified server-side [IDOR guard]."""
    if not service.revoke_session(current_user.id, session_id, device):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return Response(status_code=204)


@router.get("/auth/security-log", response_model=list[SecurityLogItem])
def security_log(
    limit: int = Query(default=20, ge=1, le=100),
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: AuthService = Depends(get_auth_service),
) -> list[SecurityLogItem]:
    return [
        SecurityLogItem(
            action=entry.action,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            details=entry.details,
            created_at=entry.created_at,
        )
        for entry in service.security_history(current_user.id, limit=limit)
    ]


@router.post("/auth/account/delete", response_model=MessageResponse, dependencies=_CSRF)
def delete_account(
    body: PasswordConfirmRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> MessageResponse:
    """Delete the account and all of its security data; the audit trail is anonymized."""
    service.delete_account(current_user.id, body.password, session, device)
    return MessageResponse(message="Account deleted.")


# ---------------------------------------------------------------------------
# Maintenance (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/admin/cleanup", response_model=CleanupResponse, dependencies=_CSRF)
def run_cleanup(
    current_user: AuthenticatedUser = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> CleanupResponse:
    """Run the periodic cleanup now."""
    result = service.cleanup()
    return CleanupResponse(
        expired_refresh_tokens=result.expired_refresh_tokens,
        expired_verifications=result.expired_verifications,
        expired_resets=result.expired_resets,
        expired_rate_limits=result.expired_rate_limits,
        old_security_logs=result.old_security_logs,
        timestamp=result.timestamp,
    )
