"""
tests/conftest.py -- Shared test fixtures for authcore unit and integration tests.

This module provides:
  - RecordingEmailSender: captures outgoing mail so tests can read tokens
  - _make_test_store(): creates an isolated named shared-memory DB
  - _patch_lifespan(): wires a test AuthService into app.state, bypassing real startup
  - store / service: unit-level fixtures over a private in-memory DB
  - client: TestClient over the real app with a fresh DB per test
  - helpers for CSRF, verified users and clock control

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the TestClient because route handlers run in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Unit fixtures call services directly on one thread, so plain
:memory: is enough there.

Environment must be set before any authcore import: DEBUG lets
get_settings() generate signing secrets, BCRYPT_ROUNDS keeps hashing fast,
HTTP_RATE_LIMIT_ENABLED switches the coarse slowapi throttle off so the
per-action windows are what tests observe.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Optional

# CRITICAL: set before any auth/core import (get_settings() is cached).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("HTTP_RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.email import EmailKind
from auth.models import DeviceContext, User
from auth.service import AuthService, build_auth_service
from auth.store import AuthStore
from core import clock
from core.config import get_settings

PASSWORD = "Correct-Horse-9"
DEVICE = DeviceContext(ip="203.0.113.10", user_agent="Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0")

# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------


class RecordingEmailSender:
    """EmailSender that remembers every message instead of sending it."""

    def __init__(self) -> None:
        self.sent: list[tuple[EmailKind, str, Optional[str]]] = []
        self.fail = False

    def send(self, kind: EmailKind, address: str, token: Optional[str] = None) -> None:
        if self.fail:
            raise ConnectionError("SMTP unavailable")
        self.sent.append((kind, address, token))

    def kinds(self) -> list[EmailKind]:
        return [kind for kind, _, _ in self.sent]

    def last_token(self, kind: EmailKind) -> str:
        for sent_kind, _, token in reversed(self.sent):
            if sent_kind is kind and token:
                return token
        raise AssertionError(f"no {kind.value} email was sent")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> AuthStore:
    """Create an isolated named shared-memory SQLite store.

    Args:
        db_suffix: Unique string appended to the DB name so tests never share state.
    """
    return AuthStore(db_url=f"sqlite:///file:test_authcore_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The cleanup_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


def make_verified_user(
    service: AuthService,
    email: str = "alice@example.com",
    password: str = PASSWORD,
    role: str = "user",
) -> User:
    """Register through the credential service and mark the address verified."""
    user, _ = service.credentials.register(email, password, "Alice Example", DEVICE)
    fields: dict = {"is_verified": True}
    if role != "user":
        fields["role"] = role
    service.store.update_user(user.id, **fields)
    return service.store.get_user_by_id(user.id)


# ---------------------------------------------------------------------------
# Clock control
# ---------------------------------------------------------------------------


class FrozenClock:
    """Replaces core.clock.utcnow with a movable instant."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or clock.utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture
def frozen_clock(monkeypatch: pytest.MonkeyPatch) -> FrozenClock:
    frozen = FrozenClock()
    monkeypatch.setattr(clock, "utcnow", frozen)
    return frozen


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def emails() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore(db_url="sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def service(store: AuthStore, emails: RecordingEmailSender) -> AuthService:
    return build_auth_service(get_settings(), store=store, email=emails)


# ---------------------------------------------------------------------------
# Integration fixtures -- one TestClient and one DB per test
# ---------------------------------------------------------------------------


@pytest.fixture
def api_service(emails: RecordingEmailSender) -> Generator[AuthService, None, None]:
    test_store = _make_test_store(uuid.uuid4().hex)
    yield build_auth_service(get_settings(), store=test_store, email=emails)
    test_store.close()


@pytest.fixture
def client(api_service: AuthService) -> Generator[TestClient, None, None]:
    """TestClient over the real app. follow_redirects=False so 303s stay visible."""
    app.router.lifespan_context = _patch_lifespan(api_service)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c


def csrf_headers(client: TestClient) -> dict[str, str]:
    """Fetch (or create) the session's CSRF token and return it as a header."""
    resp = client.get("/api/v1/auth/csrf")
    assert resp.status_code == 200
    return {"X-CSRF-Token": resp.json()["csrf_token"]}


def login(client: TestClient, email: str = "alice@example.com", password: str = PASSWORD):
    return client.post(
        "/api/v1/auth/login",
        json={"email": email, "password": password},
        headers=csrf_headers(client),
    )
