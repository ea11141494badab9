"""
auth/csrf.py -- Synchronizer-token CSRF protection.

One 256-bit token per session, created lazily and stored in the signed
session cookie. State-changing requests must echo it back (X-CSRF-Token
header or _csrf form field). Comparison checks length first, then uses
hmac.compare_digest, so neither content nor length leaks through timing.
"""

from __future__ import annotations

import hmac
from typing import Optional

from auth.crypto import generate_secure_token
from auth.errors import CSRFError
from auth.session import Session


def get_csrf_token(session: Session) -> str:
    if not session.csrf_token:
        session.csrf_token = generate_secure_token()
    return session.csrf_token


def verify_csrf_token(session: Session, submitted: Optional[str]) -> bool:
    expected = session.csrf_token
    if not expected or not submitted:
        return False
    expected_bytes = expected.encode("utf-8")
    submitted_bytes = submitted.encode("utf-8")
    if len(expected_bytes) != len(submitted_bytes):
        return False
    return hmac.compare_digest(expected_bytes, submitted_bytes)


def require_csrf(session: Session, submitted: Optional[str]) -> None:
    if not verify_csrf_token(session, submitted):
        raise CSRFError()
