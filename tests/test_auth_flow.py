"""
tests/test_auth_flow.py -- End-to-end tests for the /api/v1/auth/* routes.

These run through the real ASGI stack (middleware, dependencies, exception
handlers) with a fresh in-memory DB per test. Tokens are never read from
response bodies; they only travel in the signed session cookie, exactly as a
browser would hold them.

Coverage:
  - register -> verify e-mail -> login -> silent rotation on access expiry
  - replay of a stolen, already-rotated cookie kills the whole family
  - MFA: setup, confirm, two-step login, wrong-code field errors, backup codes
  - CSRF enforcement (header and form field), request validation envelopes
  - per-action rate limits, password change/reset, sessions, account deletion
"""

from __future__ import annotations

from datetime import timedelta

import pyotp
from fastapi.testclient import TestClient

from api.main import app
from auth.crypto import hash_token
from auth.email import EmailKind
from auth.models import SecurityAction
from conftest import PASSWORD, csrf_headers, login, make_verified_user
from core import clock

REGISTRATION = {
    "email": "new.user@example.com",
    "full_name": "New User",
    "password": PASSWORD,
    "confirm_password": PASSWORD,
}


def _session_cookie(client: TestClient) -> str:
    return client.cookies.get("__session")


def _second_client(session_cookie: str | None = None) -> TestClient:
    """Another browser against the same running app (lifespan already started)."""
    other = TestClient(app, follow_redirects=False)
    if session_cookie:
        other.cookies.set("__session", session_cookie)
    return other


class TestRegistrationAndLogin:
    def test_full_flow_with_silent_rotation(self, client, api_service, emails, frozen_clock) -> None:
        """register -> verify -> login -> access expires -> next request rotates transparently."""
        resp = client.post("/api/v1/auth/register", json=REGISTRATION, headers=csrf_headers(client))
        assert resp.status_code == 201
        assert resp.json() == {
            "message": "Account created. Check your inbox to verify your e-mail address.",
            "email": "new.user@example.com",
            "email_sent": True,
        }

        # Not verified yet.
        resp = login(client, "new.user@example.com")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "email_not_verified"

        token = emails.last_token(EmailKind.verification)
        assert client.get("/api/v1/auth/verify-email", params={"token": token}).status_code == 200
        again = client.get("/api/v1/auth/verify-email", params={"token": token})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "invalid_token"

        # Sign in 16 minutes "ago" so the access token is already expired.
        real_now = frozen_clock.now
        frozen_clock.now = real_now - timedelta(minutes=16)
        resp = login(client, "new.user@example.com")
        frozen_clock.now = real_now
        assert resp.status_code == 200
        assert resp.json() == {"step": "complete", "redirect": "/"}
        assert "access_token" not in resp.text and "refresh_token" not in resp.text
        assert resp.headers["cache-control"] == "no-store"
        before = _session_cookie(client)

        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["email"] == "new.user@example.com"
        assert "set-cookie" in resp.headers
        assert _session_cookie(client) != before

        user = api_service.store.get_user_by_email("new.user@example.com")
        actions = [e.action for e in api_service.audit.history(user.id, limit=50)]
        assert SecurityAction.token_refreshed.value in actions
        assert SecurityAction.login_success.value in actions
        assert len(api_service.tokens.list_active_sessions(user.id)) == 1

    def test_stolen_cookie_replay_revokes_family(self, client, api_service, emails, frozen_clock) -> None:
        user = make_verified_user(api_service)
        real_now = frozen_clock.now
        frozen_clock.now = real_now - timedelta(minutes=16)
        assert login(client).status_code == 200
        frozen_clock.now = real_now
        stolen = _session_cookie(client)

        # The legitimate browser rotates first.
        assert client.get("/api/v1/auth/me").status_code == 200

        # The copy is now a revoked refresh token: reuse.
        attacker = _second_client(stolen)
        resp = attacker.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "session_expired"
        assert "set-cookie" in resp.headers

        assert api_service.tokens.list_active_sessions(user.id) == []
        actions = [e.action for e in api_service.audit.history(user.id, limit=50)]
        assert SecurityAction.token_reuse_detected.value in actions
        assert EmailKind.suspicious_activity in emails.kinds()

    def test_register_validation_errors(self, client) -> None:
        weak = dict(REGISTRATION, password="alllowercase", confirm_password="alllowercase")
        resp = client.post("/api/v1/auth/register", json=weak, headers=csrf_headers(client))
        assert resp.status_code == 422
        assert resp.json()["error"]["fields"]["password"] == "Password must contain an upper-case letter."

        mismatch = dict(REGISTRATION, confirm_password="Other-Horse-9")
        resp = client.post("/api/v1/auth/register", json=mismatch, headers=csrf_headers(client))
        assert resp.status_code == 422
        assert resp.json()["error"]["fields"]["confirm_password"] == "Passwords do not match."

    def test_register_over_long_password_is_rejected(self, client, api_service) -> None:
        """80 characters passes the length cap but not the 72-byte bcrypt limit."""
        long_password = "Aa1!" * 20
        body = dict(REGISTRATION, password=long_password, confirm_password=long_password)
        resp = client.post("/api/v1/auth/register", json=body, headers=csrf_headers(client))
        assert resp.status_code == 422
        assert resp.json()["error"]["fields"]["password"] == "Password must be at most 72 bytes."
        assert api_service.store.get_user_by_email("new.user@example.com") is None

    def test_duplicate_registration_conflicts(self, client, api_service) -> None:
        make_verified_user(api_service, email="new.user@example.com")
        resp = client.post("/api/v1/auth/register", json=REGISTRATION, headers=csrf_headers(client))
        assert resp.status_code == 409
        assert "email" in resp.json()["error"]["fields"]

    def test_registration_survives_mail_failure(self, client, api_service, emails) -> None:
        emails.fail = True
        resp = client.post("/api/v1/auth/register", json=REGISTRATION, headers=csrf_headers(client))
        assert resp.status_code == 201
        assert resp.json()["email_sent"] is False
        assert api_service.store.get_user_by_email("new.user@example.com") is not None

    def test_wrong_password_and_unknown_email_look_the_same(self, client, api_service) -> None:
        make_verified_user(api_service)
        wrong = login(client, password="Wrong-Horse-9")
        unknown = login(client, email="nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_logout_revokes_and_clears(self, client, api_service) -> None:
        user = make_verified_user(api_service)
        assert login(client).status_code == 200
        resp = client.post("/api/v1/auth/logout", headers=csrf_headers(client))
        assert resp.status_code == 200
        assert "Max-Age=0" in resp.headers["set-cookie"]
        assert api_service.tokens.list_active_sessions(user.id) == []
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_already_signed_in_is_redirected(self, client, api_service) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        resp = login(client)
        assert resp.status_code == 303
        assert resp.headers["location"] == "/"


class TestCsrfEnforcement:
    def test_missing_token_rejected(self, client, api_service) -> None:
        make_verified_user(api_service)
        resp = client.post("/api/v1/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "csrf_failed"

    def test_wrong_token_rejected(self, client) -> None:
        csrf_headers(client)
        resp = client.post("/api/v1/auth/logout", headers={"X-CSRF-Token": "0" * 64})
        assert resp.status_code == 403

    def test_form_field_accepted(self, client, api_service) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        token = csrf_headers(client)["X-CSRF-Token"]
        resp = client.post("/api/v1/auth/logout", data={"_csrf": token})
        assert resp.status_code == 200


class TestRateLimits:
    def test_sixth_login_attempt_from_ip_is_limited(self, client) -> None:
        for _ in range(5):
            assert login(client, email="nobody@example.com").status_code == 401
        resp = login(client, email="nobody@example.com")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert int(resp.headers["retry-after"]) > 0

    def test_successful_login_resets_window(self, client, api_service) -> None:
        make_verified_user(api_service)
        for _ in range(4):
            login(client, email="nobody@example.com")
        assert login(client).status_code == 200
        assert api_service.limiter.remaining("login", "testclient") == 5

    def test_locked_account_reported_before_ip_limit(self, client, api_service) -> None:
        """The sixth attempt, even with the right password, gets the lockout and its wait time."""
        make_verified_user(api_service)
        statuses = [login(client, password="Wrong-Horse-9").status_code for _ in range(5)]
        assert statuses == [401, 401, 401, 401, 423]

        resp = login(client)
        assert resp.status_code == 423
        assert resp.json()["error"]["code"] == "account_locked"
        assert "15 minutes" in resp.json()["error"]["message"]


class TestMfaFlow:
    def _enable_mfa(self, client) -> tuple[str, list[str]]:
        resp = client.post("/api/v1/auth/mfa/setup", headers=csrf_headers(client))
        assert resp.status_code == 200
        secret = resp.json()["secret"]
        assert resp.json()["otpauth_uri"].startswith("otpauth://totp/")
        resp = client.post(
            "/api/v1/auth/mfa/confirm", json={"code": pyotp.TOTP(secret).now()}, headers=csrf_headers(client)
        )
        assert resp.status_code == 200
        return secret, resp.json()["codes"]

    def test_setup_keeps_current_session_signed_in(self, client, api_service, emails) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        self._enable_mfa(client)

        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 200
        assert resp.json()["mfa_enabled"] is True
        assert EmailKind.mfa_enabled in emails.kinds()

    def test_two_step_login(self, client, api_service) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        secret, _ = self._enable_mfa(client)
        client.post("/api/v1/auth/logout", headers=csrf_headers(client))

        resp = login(client)
        assert resp.status_code == 200
        assert resp.json()["step"] == "mfa"

        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "mfa_required"

        stale = pyotp.TOTP(secret).at(clock.utcnow() - timedelta(seconds=90))
        resp = client.post("/api/v1/auth/login/mfa", json={"code": stale}, headers=csrf_headers(client))
        assert resp.status_code == 400
        assert resp.json()["error"]["fields"] == {"code": "Invalid code."}

        resp = client.post(
            "/api/v1/auth/login/mfa", json={"code": pyotp.TOTP(secret).now()}, headers=csrf_headers(client)
        )
        assert resp.status_code == 200
        assert resp.json()["step"] == "complete"
        assert client.get("/api/v1/auth/me").status_code == 200

    def test_backup_code_login_is_single_use(self, client, api_service) -> None:
        user = make_verified_user(api_service)
        assert login(client).status_code == 200
        _, codes = self._enable_mfa(client)

        for expected in (200, 400):
            client.post("/api/v1/auth/logout", headers=csrf_headers(client))
            assert login(client).json()["step"] == "mfa"
            resp = client.post(
                "/api/v1/auth/login/mfa",
                json={"code": codes[0], "use_backup": True},
                headers=csrf_headers(client),
            )
            assert resp.status_code == expected

        stats = api_service.backup_code_stats(user.id)
        assert (stats.used, stats.remaining) == (1, 9)

    def test_mfa_step_without_password_step(self, client) -> None:
        resp = client.post("/api/v1/auth/login/mfa", json={"code": "123456"}, headers=csrf_headers(client))
        assert resp.status_code == 401

    def test_backup_code_stats_and_disable(self, client, api_service, emails) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        self._enable_mfa(client)

        stats = client.get("/api/v1/auth/mfa/backup-codes").json()
        assert stats["total"] == 10 and stats["remaining"] == 10 and not stats["running_low"]

        resp = client.post("/api/v1/auth/mfa/disable", json={"password": "Wrong-Horse-9"}, headers=csrf_headers(client))
        assert resp.status_code == 400
        assert "password" in resp.json()["error"]["fields"]

        resp = client.post("/api/v1/auth/mfa/disable", json={"password": PASSWORD}, headers=csrf_headers(client))
        assert resp.status_code == 200
        me = client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["mfa_enabled"] is False
        assert EmailKind.mfa_disabled in emails.kinds()

    def test_regenerate_backup_codes(self, client, api_service) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        _, old = self._enable_mfa(client)
        resp = client.post(
            "/api/v1/auth/mfa/backup-codes/regenerate", json={"password": PASSWORD}, headers=csrf_headers(client)
        )
        assert resp.status_code == 200
        new = resp.json()["codes"]
        assert len(new) == 10 and set(new).isdisjoint(old)


class TestPasswords:
    def test_change_password_signs_out_other_sessions(self, client, api_service) -> None:
        user = make_verified_user(api_service)
        assert login(client).status_code == 200
        other = _second_client()
        assert login(other).status_code == 200
        assert len(api_service.tokens.list_active_sessions(user.id)) == 2

        new_password = "Brand-New-Pass-1"
        resp = client.post(
            "/api/v1/auth/password/change",
            json={"current_password": PASSWORD, "new_password": new_password, "confirm_password": new_password},
            headers=csrf_headers(client),
        )
        assert resp.status_code == 200

        sessions = client.get("/api/v1/auth/sessions").json()
        assert len(sessions) == 1 and sessions[0]["current"] is True
        refresh = api_service.sessions.load(f"__session={other.cookies.get('__session')}").refresh_token
        assert api_service.store.get_refresh_token(hash_token(refresh)).revoked

    def test_change_password_wrong_current_password(self, client, api_service) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        resp = client.post(
            "/api/v1/auth/password/change",
            json={"current_password": "Wrong-Horse-9", "new_password": "Brand-New-Pass-1", "confirm_password": "Brand-New-Pass-1"},
            headers=csrf_headers(client),
        )
        assert resp.status_code == 400
        assert "current_password" in resp.json()["error"]["fields"]

    def test_forgot_and_reset(self, client, api_service, emails) -> None:
        user = make_verified_user(api_service)
        resp = client.post("/api/v1/auth/password/forgot", json={"email": "alice@example.com"}, headers=csrf_headers(client))
        assert resp.status_code == 200
        token = emails.last_token(EmailKind.password_reset)

        assert client.get("/api/v1/auth/password/reset", params={"token": token}).status_code == 200
        new_password = "Reset-Pass-42!"
        resp = client.post(
            "/api/v1/auth/password/reset",
            json={"token": token, "password": new_password, "confirm_password": new_password},
            headers=csrf_headers(client),
        )
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/password/reset", params={"token": token}).status_code == 400
        assert login(client, password=new_password).status_code == 200
        actions = [e.action for e in api_service.audit.history(user.id, limit=50)]
        assert SecurityAction.password_reset_completed.value in actions

    def test_forgot_for_unknown_email_looks_the_same(self, client, api_service, emails) -> None:
        make_verified_user(api_service)
        known = client.post("/api/v1/auth/password/forgot", json={"email": "alice@example.com"}, headers=csrf_headers(client))
        unknown = client.post("/api/v1/auth/password/forgot", json={"email": "nobody@example.com"}, headers=csrf_headers(client))
        assert known.json() == unknown.json()
        assert emails.kinds().count(EmailKind.password_reset) == 1


class TestAccountManagement:
    def test_sessions_and_revoke(self, client, api_service) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        other = _second_client()
        assert login(other).status_code == 200

        sessions = client.get("/api/v1/auth/sessions").json()
        assert len(sessions) == 2
        foreign = next(s for s in sessions if not s["current"])
        resp = client.delete(f"/api/v1/auth/sessions/{foreign['id']}", headers=csrf_headers(client))
        assert resp.status_code == 204
        assert client.delete(f"/api/v1/auth/sessions/{foreign['id']}", headers=csrf_headers(client)).status_code == 404

    def test_cannot_revoke_someone_elses_session(self, client, api_service) -> None:
        make_verified_user(api_service)
        bob = make_verified_user(api_service, email="bob@example.com")
        other = _second_client()
        assert login(other, email="bob@example.com").status_code == 200
        [bob_session] = api_service.tokens.list_active_sessions(bob.id)

        assert login(client).status_code == 200
        resp = client.delete(f"/api/v1/auth/sessions/{bob_session.id}", headers=csrf_headers(client))
        assert resp.status_code == 404

    def test_logout_all(self, client, api_service) -> None:
        user = make_verified_user(api_service)
        assert login(client).status_code == 200
        assert login(_second_client()).status_code == 200
        resp = client.post("/api/v1/auth/logout-all", headers=csrf_headers(client))
        assert resp.status_code == 200
        assert api_service.tokens.list_active_sessions(user.id) == []

    def test_security_log(self, client, api_service) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        entries = client.get("/api/v1/auth/security-log", params={"limit": 5}).json()
        assert entries[0]["action"] == "login_success"
        assert entries[0]["ip_address"] == "testclient"

    def test_delete_account(self, client, api_service) -> None:
        make_verified_user(api_service)
        assert login(client).status_code == 200
        resp = client.post("/api/v1/auth/account/delete", json={"password": "Wrong-Horse-9"}, headers=csrf_headers(client))
        assert resp.status_code == 400
        resp = client.post("/api/v1/auth/account/delete", json={"password": PASSWORD}, headers=csrf_headers(client))
        assert resp.status_code == 200
        assert api_service.store.get_user_by_email("alice@example.com") is None
        assert client.get("/api/v1/auth/me").status_code == 401

    def test_cleanup_is_admin_only(self, client, api_service) -> None:
        make_verified_user(api_service)
        make_verified_user(api_service, email="root@example.com", role="admin")
        assert login(client).status_code == 200
        assert client.post("/api/v1/auth/admin/cleanup", headers=csrf_headers(client)).status_code == 403

        client.post("/api/v1/auth/logout", headers=csrf_headers(client))
        assert login(client, email="root@example.com").status_code == 200
        resp = client.post("/api/v1/auth/admin/cleanup", headers=csrf_headers(client))
        assert resp.status_code == 200
        assert set(resp.json()) >= {"expired_refresh_tokens", "expired_rate_limits", "timestamp"}
