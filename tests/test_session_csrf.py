"""
tests/test_session_csrf.py -- Unit tests for auth/session.py and auth/csrf.py.

Covers:
  - signed cookie round trip, cookie attributes, destroy cookie
  - tampered, foreign-key and garbage cookies load as empty sessions
  - secret rotation: old cookies still load, new cookies use the newest key
  - modification tracking drives whether Set-Cookie is needed
  - CSRF: lazy creation, exact match, length mismatch, missing token
"""

from __future__ import annotations

import pytest

from auth.csrf import get_csrf_token, require_csrf, verify_csrf_token
from auth.errors import CSRFError
from auth.session import Session, SessionStore

OLD_SECRET = "o" * 40
NEW_SECRET = "n" * 40


def _cookie_header(set_cookie: str) -> str:
    """Turn a Set-Cookie value into the Cookie header a browser would send."""
    return set_cookie.split(";", 1)[0]


@pytest.fixture
def sessions() -> SessionStore:
    return SessionStore([NEW_SECRET], cookie_name="__session", max_age=3600)


class TestSessionStore:
    def test_round_trip(self, sessions) -> None:
        session = Session(access_token="a", refresh_token="r", csrf_token="c", pending_mfa_user_id=7)
        loaded = sessions.load(_cookie_header(sessions.commit(session)))
        assert loaded.access_token == "a"
        assert loaded.refresh_token == "r"
        assert loaded.csrf_token == "c"
        assert loaded.pending_mfa_user_id == 7
        assert not loaded.is_modified()

    def test_cookie_attributes(self, sessions) -> None:
        value = sessions.commit(Session(csrf_token="c"))
        assert value.startswith("__session=")
        for attr in ("Path=/", "Max-Age=3600", "HttpOnly", "SameSite=Lax"):
            assert attr in value
        assert "Secure" not in value
        secure = SessionStore([NEW_SECRET], secure=True)
        assert "Secure" in secure.commit(Session(csrf_token="c"))

    def test_cookie_does_not_contain_plain_json(self, sessions) -> None:
        value = sessions.commit(Session(csrf_token="visible-marker"))
        assert '"csrf_token"' not in value

    def test_empty_session_commits_as_destroy(self, sessions) -> None:
        value = sessions.commit(Session())
        assert value.startswith("__session=;")
        assert "Max-Age=0" in value

    def test_tampered_cookie_is_empty_session(self, sessions) -> None:
        cookie = _cookie_header(sessions.commit(Session(access_token="a")))
        pos = len("__session=") + 3
        tampered = cookie[:pos] + ("A" if cookie[pos] != "A" else "B") + cookie[pos + 1 :]
        assert sessions.load(tampered).is_empty()

    def test_foreign_and_garbage_cookies(self, sessions) -> None:
        foreign = SessionStore(["x" * 40]).commit(Session(access_token="a"))
        assert sessions.load(_cookie_header(foreign)).is_empty()
        assert sessions.load("__session=garbage").is_empty()
        assert sessions.load("other=1").is_empty()
        assert sessions.load(None).is_empty()

    def test_expired_cookie_is_empty_session(self, sessions) -> None:
        cookie = _cookie_header(sessions.commit(Session(access_token="a")))
        short = SessionStore([NEW_SECRET], max_age=-1)
        assert short.load(cookie).is_empty()

    def test_secret_rotation(self) -> None:
        old_store = SessionStore([OLD_SECRET])
        rotated = SessionStore([OLD_SECRET, NEW_SECRET])
        new_only = SessionStore([NEW_SECRET])

        old_cookie = _cookie_header(old_store.commit(Session(access_token="a")))
        assert rotated.load(old_cookie).access_token == "a"

        new_cookie = _cookie_header(rotated.commit(Session(access_token="b")))
        assert new_only.load(new_cookie).access_token == "b"

    def test_requires_a_secret(self) -> None:
        with pytest.raises(ValueError):
            SessionStore([])


class TestSessionObject:
    def test_modification_tracking(self) -> None:
        session = Session.from_dict({"csrf_token": "c"})
        assert not session.is_modified()
        session.access_token = "a"
        assert session.is_modified()

    def test_clear_tokens_keeps_csrf(self) -> None:
        session = Session(access_token="a", refresh_token="r", csrf_token="c")
        session.clear_tokens()
        assert session.to_dict() == {"csrf_token": "c"}

    def test_clear_drops_everything(self) -> None:
        session = Session(access_token="a", csrf_token="c", pending_mfa_user_id=1, mfa_setup_secret="s")
        session.clear()
        assert session.is_empty()

    def test_unknown_keys_ignored(self) -> None:
        session = Session.from_dict({"csrf_token": "c", "is_admin": True})
        assert session.to_dict() == {"csrf_token": "c"}


class TestCsrf:
    def test_token_created_once(self) -> None:
        session = Session()
        token = get_csrf_token(session)
        assert len(token) == 64
        assert get_csrf_token(session) == token
        assert session.is_modified()

    def test_matching_token(self) -> None:
        session = Session()
        token = get_csrf_token(session)
        assert verify_csrf_token(session, token)
        require_csrf(session, token)

    def test_same_length_mismatch(self) -> None:
        session = Session()
        token = get_csrf_token(session)
        wrong = ("0" if token[0] != "0" else "1") + token[1:]
        assert not verify_csrf_token(session, wrong)

    def test_length_mismatch(self) -> None:
        session = Session()
        token = get_csrf_token(session)
        assert not verify_csrf_token(session, token[:-1])
        assert not verify_csrf_token(session, token + "0")

    def test_missing_tokens(self) -> None:
        session = Session()
        assert not verify_csrf_token(session, "anything")
        get_csrf_token(session)
        assert not verify_csrf_token(session, None)
        assert not verify_csrf_token(session, "")
        with pytest.raises(CSRFError) as exc:
            require_csrf(session, None)
        assert exc.value.status_code == 403
