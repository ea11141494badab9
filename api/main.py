"""
api/main.py -- FastAPI application entry point for authcore.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. log_requests          -- method, path, status, latency
  5. commit_session        -- loads the signed session cookie before the route,
                              writes Set-Cookie afterwards if it changed

Lifespan builds the AuthService (store, session store, email sender) and
starts the periodic cleanup task; shutdown cancels the task and disposes the
engine symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.errors import AuthError
from auth.service import build_auth_service
from core.config import get_settings

VERSION = "0.3.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("authcore.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Background cleanup task
# ---------------------------------------------------------------------------


async def _cleanup_loop(app: FastAPI) -> None:
    """Delete expired tokens, windows and old audit rows every CLEANUP_INTERVAL_SECONDS.

    Runs as a background asyncio task started in lifespan startup. The
    cleanup itself is blocking SQL, so it runs in a worker thread. A failed
    run is logged and the loop keeps going; CancelledError from task.cancel()
    during shutdown propagates out of asyncio.sleep and unwinds cleanly.
    """
    while True:
        await asyncio.sleep(settings.cleanup_interval_seconds)
        try:
            await asyncio.to_thread(app.state.auth_service.cleanup)
        except SQLAlchemyError:
            logger.exception("Scheduled cleanup failed")


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The cleanup task references app.state.auth_service, so the
    service must exist first.
    """
    logger.info("authcore API starting up")
    app.state.auth_service = build_auth_service(settings)
    logger.info("Auth service initialized (database=%s)", app.state.auth_service.store.engine.url.render_as_string())
    app.state.cleanup_task = asyncio.create_task(_cleanup_loop(app))

    yield

    app.state.cleanup_task.cancel()
    app.state.auth_service.store.close()
    logger.info("authcore API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="authcore API",
    description="Credential, session and token security core: login, MFA, refresh-token rotation, CSRF.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI. The @app.middleware("http") functions
# below sit inside these.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Session middleware
#
# Loads the signed session cookie into request.state.session before routing
# and commits it afterwards. Runs outside the exception handlers, so a
# session changed by a failing request (e.g. tokens cleared after refresh
# reuse) is still written back.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def commit_session(request: Request, call_next):
    service = request.app.state.auth_service
    request.state.session = service.sessions.load(request.headers.get("cookie"))
    response = await call_next(request)
    session = request.state.session
    if session.is_modified():
        response.headers.append("set-cookie", service.sessions.commit(session))
    if request.url.path.startswith("/api/v1/auth"):
        response.headers["Cache-Control"] = "no-store"
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One line per request. Health probes log at DEBUG to keep the log readable."""
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    level = logging.DEBUG if request.url.path == "/api/v1/health" else logging.INFO
    logger.log(
        level,
        "%s %s -> %d in %.1fms (ip=%s)",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every error body has the same shape, {"error": {code, message, fields?}},
# whether it came from the security core, request validation, the coarse
# throttle or an unexpected crash.
# ---------------------------------------------------------------------------


def _error_response(
    status_code: int,
    code: str,
    message: str,
    *,
    fields: dict[str, str] | None = None,
    detail: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, fields=fields or None, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers or None)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map security-core errors to their status, code, message and field errors.

    Token reuse arrives here as an ordinary session_expired error; the
    security event has already been logged and audited by the token service.
    """
    if exc.status_code >= 500:
        logger.error("Auth error %s on %s %s", exc.code, request.method, request.url.path)
    return _error_response(exc.status_code, exc.code, exc.message, fields=exc.fields, headers=exc.headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """The slowapi throttle tripped before the per-action limiter was consulted."""
    client = request.client.host if request.client else "unknown"
    logger.warning("Throttled %s %s from %s", request.method, request.url.path, client)
    return _error_response(
        429,
        "rate_limited",
        "Too many requests.",
        detail=str(exc),
        headers={"Retry-After": str(int(getattr(exc, "retry_after", 60)))},
    )


def _field_errors(exc: RequestValidationError) -> dict[str, str]:
    """Flatten pydantic errors to {field: message}, first message per field wins."""
    fields: dict[str, str] = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        name = loc[-1] if loc else "general"
        message = str(err.get("msg", "Invalid value."))
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        fields.setdefault(name, message)
    return fields


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Please correct the highlighted fields.", fields=_field_errors(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured detail dicts (redirects, not_found) pass through as the error body."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail), headers=exc.headers)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Database and crypto error text stays in the log, never in the body.
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Lives on the app rather than the auth router and carries no rate limit, so
# load balancer probes always reach it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database = "ok"
    try:
        with request.app.state.auth_service.store.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Health check database probe failed")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=VERSION,
        components={"app": "ok", "database": database},
    )
