"""
tests/test_tokens.py -- Unit tests for auth/tokens.py.

Covers:
  - access/refresh JWT claims and key separation
  - rotation keeps the family, revokes the presented token, stores only hashes
  - reuse of a rotated token revokes the whole family and alerts the owner
  - replay of a token that was merely logged out revokes nothing and sends no alert
  - losing the rotation race is treated as reuse
  - silent refresh through refresh_session
  - cleanup and per-user session revocation
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from auth.crypto import hash_token
from auth.email import EmailKind
from auth.errors import SessionExpiredError, TokenReuseError
from auth.models import SecurityAction
from auth.session import Session
from auth.tokens import (
    create_access_token,
    create_refresh_token,
    decode_access_token,
    decode_refresh_token,
    generate_tokens,
)
from conftest import DEVICE, make_verified_user


def _actions(service, user_id: int) -> list[str]:
    return [entry.action for entry in service.audit.history(user_id, limit=100)]


class TestJwt:
    def test_access_token_claims(self, service) -> None:
        user = make_verified_user(service)
        claims = decode_access_token(create_access_token(user))
        assert claims["user_id"] == user.id
        assert claims["sub"] == str(user.id)
        assert claims["email"] == "alice@example.com"
        assert claims["role"] == "user"
        assert claims["type"] == "access"
        assert "mfa_verified" not in claims

    def test_mfa_claim_only_for_mfa_accounts(self, service) -> None:
        user = make_verified_user(service)
        user.mfa_enabled = True
        assert decode_access_token(create_access_token(user))["mfa_verified"] is False
        assert decode_access_token(create_access_token(user, mfa_verified=True))["mfa_verified"] is True

    def test_refresh_token_never_decodes_as_access(self, service) -> None:
        user = make_verified_user(service)
        tokens = generate_tokens(user)
        assert decode_access_token(tokens.refresh_token) is None
        assert decode_refresh_token(tokens.access_token) is None
        payload = decode_refresh_token(tokens.refresh_token)
        assert payload["family"] == tokens.refresh_family
        assert payload["user_id"] == user.id

    def test_tampered_token_rejected(self, service) -> None:
        user = make_verified_user(service)
        token = create_access_token(user)
        flipped = token[:-2] + ("A" if token[-2] != "A" else "B") + token[-1]
        assert decode_access_token(flipped) is None

    def test_refresh_tokens_are_unique(self) -> None:
        assert create_refresh_token(1, "fam") != create_refresh_token(1, "fam")


class TestRotation:
    def test_rotate_keeps_family_and_revokes_old(self, service) -> None:
        user = make_verified_user(service)
        first = service.tokens.issue(user, DEVICE)
        second = service.tokens.rotate(first.refresh_token, DEVICE)

        assert second.refresh_family == first.refresh_family
        assert second.refresh_token != first.refresh_token
        old = service.store.get_refresh_token(hash_token(first.refresh_token))
        new = service.store.get_refresh_token(hash_token(second.refresh_token))
        assert old.revoked and old.revoked_at
        assert not new.revoked
        assert new.token_family == first.refresh_family
        assert SecurityAction.token_refreshed.value in _actions(service, user.id)

    def test_only_hashes_are_stored(self, service) -> None:
        user = make_verified_user(service)
        tokens = service.tokens.issue(user, DEVICE)
        [record] = service.tokens.list_active_sessions(user.id)
        assert record.token_hash == hash_token(tokens.refresh_token)
        assert record.token_hash != tokens.refresh_token
        assert record.device_info == DEVICE.device_info
        assert record.ip_address == DEVICE.ip

    def test_reuse_revokes_family_and_alerts(self, service, emails) -> None:
        user = make_verified_user(service)
        first = service.tokens.issue(user, DEVICE)
        second = service.tokens.rotate(first.refresh_token, DEVICE)
        third = service.tokens.rotate(second.refresh_token, DEVICE)

        with pytest.raises(TokenReuseError):
            service.tokens.rotate(first.refresh_token, DEVICE)

        # The legitimate holder's newest token died with the family.
        assert not service.tokens.validate_refresh_token(user.id, third.refresh_token)
        with pytest.raises(TokenReuseError):
            service.tokens.rotate(third.refresh_token, DEVICE)
        assert SecurityAction.token_reuse_detected.value in _actions(service, user.id)
        assert emails.kinds().count(EmailKind.suspicious_activity) == 1

    def test_reuse_does_not_touch_other_families(self, service) -> None:
        user = make_verified_user(service)
        laptop = service.tokens.issue(user, DEVICE)
        phone = service.tokens.issue(user, DEVICE)
        service.tokens.rotate(laptop.refresh_token, DEVICE)
        with pytest.raises(TokenReuseError):
            service.tokens.rotate(laptop.refresh_token, DEVICE)
        assert service.tokens.validate_refresh_token(user.id, phone.refresh_token)

    def test_replay_after_logout_sends_no_alert(self, service, emails) -> None:
        user = make_verified_user(service)
        tokens = service.tokens.issue(user, DEVICE)
        service.tokens.revoke_refresh_token(tokens.refresh_token)

        with pytest.raises(TokenReuseError):
            service.tokens.rotate(tokens.refresh_token, DEVICE)
        assert EmailKind.suspicious_activity not in emails.kinds()
        [entry] = [e for e in service.audit.history(user.id) if e.action == SecurityAction.token_reuse_detected.value]
        assert entry.details["revoked_tokens"] == 0

    def test_lost_claim_is_treated_as_reuse(self, service, monkeypatch) -> None:
        user = make_verified_user(service)
        tokens = service.tokens.issue(user, DEVICE)
        # Another request claims the row between our checks and our UPDATE.
        monkeypatch.setattr(service.store, "claim_refresh_token", lambda token_hash, conn=None: False)

        with pytest.raises(TokenReuseError):
            service.tokens.rotate(tokens.refresh_token, DEVICE)
        assert service.tokens.list_active_sessions(user.id) == []

    def test_garbage_and_unknown_tokens_expire_the_session(self, service) -> None:
        user = make_verified_user(service)
        with pytest.raises(SessionExpiredError):
            service.tokens.rotate("not-a-jwt", DEVICE)
        unknown = create_refresh_token(user.id, "family-never-stored")
        with pytest.raises(SessionExpiredError):
            service.tokens.rotate(unknown, DEVICE)

    def test_deleted_user_cannot_rotate(self, service) -> None:
        user = make_verified_user(service)
        tokens = service.tokens.issue(user, DEVICE)
        service.store.delete_user(user.id)
        with pytest.raises(SessionExpiredError):
            service.tokens.rotate(tokens.refresh_token, DEVICE)


class TestRefreshSession:
    def test_valid_access_token_left_alone(self, service) -> None:
        user = make_verified_user(service)
        tokens = service.tokens.issue(user, DEVICE)
        session = Session(access_token=tokens.access_token, refresh_token=tokens.refresh_token)
        assert service.tokens.refresh_session(session, DEVICE) is False
        assert session.refresh_token == tokens.refresh_token

    def test_expired_access_token_rotates(self, service, frozen_clock) -> None:
        user = make_verified_user(service)
        real_now = frozen_clock.now
        frozen_clock.now = real_now - timedelta(minutes=16)
        tokens = service.tokens.issue(user, DEVICE)
        frozen_clock.now = real_now

        session = Session(access_token=tokens.access_token, refresh_token=tokens.refresh_token)
        assert service.tokens.refresh_session(session, DEVICE) is True
        assert session.refresh_token != tokens.refresh_token
        assert decode_access_token(session.access_token)["user_id"] == user.id

    def test_reuse_clears_session_and_reraises(self, service, frozen_clock) -> None:
        user = make_verified_user(service)
        real_now = frozen_clock.now
        frozen_clock.now = real_now - timedelta(minutes=16)
        tokens = service.tokens.issue(user, DEVICE)
        frozen_clock.now = real_now
        service.tokens.rotate(tokens.refresh_token, DEVICE)

        stale = Session(access_token=tokens.access_token, refresh_token=tokens.refresh_token)
        with pytest.raises(TokenReuseError):
            service.tokens.refresh_session(stale, DEVICE)
        assert stale.access_token is None and stale.refresh_token is None


class TestCleanupAndSessions:
    def test_cleanup_removes_expired_and_old_revoked(self, service, frozen_clock) -> None:
        user = make_verified_user(service)
        old = service.tokens.issue(user, DEVICE)
        service.tokens.revoke_refresh_token(old.refresh_token)
        frozen_clock.advance(days=8)
        fresh = service.tokens.issue(user, DEVICE)

        assert service.tokens.cleanup_expired_tokens() == 1
        assert service.store.get_refresh_token(hash_token(old.refresh_token)) is None
        assert service.store.get_refresh_token(hash_token(fresh.refresh_token)) is not None

    def test_revoke_session_checks_ownership(self, service) -> None:
        alice = make_verified_user(service)
        bob = make_verified_user(service, email="bob@example.com")
        service.tokens.issue(alice, DEVICE)
        [record] = service.tokens.list_active_sessions(alice.id)

        assert service.tokens.revoke_session(bob.id, record.id) is False
        assert service.tokens.revoke_session(alice.id, record.id) is True
        assert service.tokens.list_active_sessions(alice.id) == []

    def test_revoke_all(self, service) -> None:
        user = make_verified_user(service)
        for _ in range(3):
            service.tokens.issue(user, DEVICE)
        assert service.tokens.revoke_all_user_tokens(user.id) == 3
        assert service.tokens.list_active_sessions(user.id) == []
