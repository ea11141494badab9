"""
auth/crypto.py -- Password hashing, opaque-token hashing, secure token generation.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Cost factor comes from
       Settings.bcrypt_rounds (12 in production). bcrypt is the right choice for
       low-entropy secrets because its cost factor makes offline brute force
       expensive, and checkpw compares in constant time.

  Opaque tokens: refresh tokens, backup codes, e-mail verification and
       password reset tokens are stored as SHA-256 hex digests. These secrets
       are high-entropy, so bcrypt's slowness buys nothing; a deterministic
       digest lets the store look rows up by hash in O(1). A leaked database
       never contains a usable bearer secret.

  Randomness: secrets.token_hex(32) -- 256 bits from the OS CSPRNG.

  bcrypt rejects secrets longer than 72 bytes. hash_password refuses them
       with a field-level ValidationError; verify_password still spends one
       full check on the first 72 bytes and then answers False, so an
       over-long login attempt costs the same as any other wrong password.

  _DUMMY_HASH enables timing equalization in credential checks so response
       time does not reveal whether an email exists [C1].
"""

from __future__ import annotations

import hashlib
import secrets

import bcrypt

from auth.errors import ValidationError
from core.config import get_settings

_settings = get_settings()

PASSWORD_MAX_BYTES = 72
PASSWORD_TOO_LONG = f"Password must be at most {PASSWORD_MAX_BYTES} bytes."


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises:
        ValidationError: the UTF-8 encoding is longer than 72 bytes.
    """
    secret = plain.encode("utf-8")
    if len(secret) > PASSWORD_MAX_BYTES:
        raise ValidationError(fields={"password": PASSWORD_TOO_LONG})
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(secret, salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Malformed hashes and over-long passwords verify as False rather than raising.
    """
    secret = plain.encode("utf-8")
    try:
        matched = bcrypt.checkpw(secret[:PASSWORD_MAX_BYTES], hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False
    # Nothing longer than the limit was ever hashed.
    return matched and len(secret) <= PASSWORD_MAX_BYTES


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authcore_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt verification on a dummy hash (unknown-account path)."""
    verify_password(plain, _DUMMY_HASH)


def hash_token(raw: str) -> str:
    """SHA-256 hex digest of an opaque bearer artifact."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def generate_secure_token() -> str:
    """256-bit random token as 64 hex characters."""
    return secrets.token_hex(32)
