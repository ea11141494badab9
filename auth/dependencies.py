"""
auth/dependencies.py -- FastAPI Depends() helpers around the security core.

The session is loaded once per request by the commit_session middleware in
api/main.py and parked on request.state.session; the same middleware writes
the Set-Cookie header afterwards if anything changed it. These helpers only
read that object (loading it lazily if the middleware is not mounted).

get_current_user() runs the AuthGuard: silent refresh, access-token check,
MFA completeness, fresh user row, verified email. Failures are AuthError
subclasses; api/main.py maps them to the JSON error envelope.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.csrf import require_csrf as _require_csrf_token
from auth.guard import require_admin as _require_admin_role
from auth.models import AuthenticatedUser, DeviceContext
from auth.service import AuthService
from auth.session import Session

CSRF_HEADER = "X-CSRF-Token"
CSRF_FORM_FIELD = "_csrf"

_FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_session(request: Request) -> Session:
    session = getattr(request.state, "session", None)
    if session is None:
        service = get_auth_service(request)
        session = service.sessions.load(request.headers.get("cookie"))
        request.state.session = session
    return session


def client_ip(request: Request, trust_proxy_headers: bool) -> str:
    """Best-effort client address.

    Proxy headers are only honoured when TRUST_PROXY_HEADERS is set; otherwise
    any client could pick its own rate-limit identity.
    """
    if trust_proxy_headers:
        for header in ("cf-connecting-ip", "x-forwarded-for", "x-real-ip"):
            value = request.headers.get(header)
            if value:
                return value.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def get_device_context(request: Request) -> DeviceContext:
    device = getattr(request.state, "device", None)
    if device is None:
        service = get_auth_service(request)
        device = DeviceContext(
            ip=client_ip(request, service.settings.trust_proxy_headers),
            user_agent=request.headers.get("user-agent", "unknown"),
        )
        request.state.device = device
    return device


async def require_csrf(request: Request, session: Session = Depends(get_session)) -> None:
    """Reject state-changing requests without the session's CSRF token (403)."""
    submitted = request.headers.get(CSRF_HEADER)
    if not submitted and request.headers.get("content-type", "").startswith(_FORM_TYPES):
        form = await request.form()
        value = form.get(CSRF_FORM_FIELD)
        submitted = value if isinstance(value, str) else None
    _require_csrf_token(session, submitted)


def get_current_user(
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> AuthenticatedUser:
    """Require a fully authenticated session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: AuthenticatedUser = Depends(get_current_user)): ...
    """
    return service.guard.authenticate_session(session, device)


def get_optional_user(
    session: Session = Depends(get_session),
    device: DeviceContext = Depends(get_device_context),
    service: AuthService = Depends(get_auth_service),
) -> AuthenticatedUser | None:
    return service.guard.get_optional_user(session, device)


def redirect_if_authenticated(
    user: AuthenticatedUser | None = Depends(get_optional_user),
    service: AuthService = Depends(get_auth_service),
) -> None:
    """Send already-signed-in users away from login/register (303)."""
    if user is not None:
        raise HTTPException(
            status_code=303,
            detail={"code": "already_authenticated", "message": "Already signed in."},
            headers={"Location": service.settings.post_login_redirect},
        )


def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    """Require admin role. 401 if unauthenticated, 403 if not admin."""
    return _require_admin_role(user)
