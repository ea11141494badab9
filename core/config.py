"""
core/config.py -- authcore settings, read once from the environment.

Every tunable of the security core lives on Settings: signing keys, cookie
attributes, token lifetimes, lockout and password-history limits, SMTP and
cleanup cadence. Nothing else in the tree reads os.environ; call
get_settings() instead. Field names map to upper-case env vars
(refresh_secret_key -> REFRESH_SECRET_KEY) and an optional .env file is
honoured.

get_settings() is wrapped in lru_cache, so the environment is parsed once
per process. Tests that need different values set the env vars before the
first import (see tests/conftest.py) or call get_settings.cache_clear().

Signing keys:
  Keys shorter than 32 characters are rejected. With DEBUG=true, missing
  keys are generated per process and a warning is logged (sessions will not
  survive a restart). Without DEBUG, a missing SECRET_KEY,
  REFRESH_SECRET_KEY or SESSION_SECRETS stops startup.

  SESSION_SECRETS is a JSON list, oldest first. The last entry signs new
  cookies and every entry is accepted on read, so the cookie key can be
  rotated without signing everybody out.

Layer rule: core/ may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

_MIN_KEY_LENGTH = 32


class Settings(BaseSettings):
    """Security-core settings. Every field has a default; only the signing
    keys must be supplied outside DEBUG mode."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    app_name: str = "authcore"
    database_url: str = "sqlite:///authcore.db"
    # Empty values are the sentinel for "not configured". The model_validator
    # below either generates dev values or raises, so callers never see "".
    secret_key: str = ""
    refresh_secret_key: str = ""
    session_secrets: list[str] = []
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    session_cookie_name: str = "__session"
    session_max_age_seconds: int = 7 * 24 * 3600
    secure_cookies: bool = False
    post_login_redirect: str = "/"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_days: int = 7
    revoked_token_retention_days: int = 7

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    max_login_attempts: int = 5
    lockout_minutes: int = 15
    password_history_count: int = 5
    email_verification_ttl_hours: int = 24
    password_reset_ttl_minutes: int = 60

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    totp_digits: int = 6
    totp_interval_seconds: int = 30
    totp_valid_window: int = 1
    backup_code_count: int = 10
    backup_codes_low_threshold: int = 3

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Coarse per-IP HTTP throttle (slowapi). The per-action fixed windows
    # live in auth/ratelimit.py and are always on.
    http_rate_limit_enabled: bool = True
    http_login_rate_limit: str = "30/minute"
    trust_proxy_headers: bool = False

    # ------------------------------------------------------------------
    # Persistence and maintenance
    # ------------------------------------------------------------------

    transaction_max_retries: int = 3
    transaction_backoff_seconds: float = 0.05
    security_log_retention_days: int = 90
    cleanup_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Email (empty smtp_host = log instead of send)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    from_email: str = ""
    app_url: str = "http://localhost:8000"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-key policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning.
            Sessions and tokens will not survive a restart.

        Production mode (DEBUG=false or not set): refuse to start if any
            signing secret is missing.

        Both modes: reject secrets shorter than 32 characters, and reject an
            access-token key that equals the refresh-token key (a refresh
            token must never verify as an access token).
        """
        missing = [
            name
            for name, value in (
                ("SECRET_KEY", self.secret_key),
                ("REFRESH_SECRET_KEY", self.refresh_secret_key),
                ("SESSION_SECRETS", self.session_secrets),
            )
            if not value
        ]
        if missing:
            if not self.debug:
                raise ValueError(
                    f"{', '.join(missing)} required in production mode. "
                    "Set them in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            if not self.secret_key:
                self.secret_key = secrets.token_hex(32)
            if not self.refresh_secret_key:
                self.refresh_secret_key = secrets.token_hex(32)
            if not self.session_secrets:
                self.session_secrets = [secrets.token_hex(32)]
            logger.warning(
                "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                ", ".join(missing),
            )
        for key in (self.secret_key, self.refresh_secret_key, *self.session_secrets):
            if len(key) < _MIN_KEY_LENGTH:
                raise ValueError(f"Signing secrets must be at least {_MIN_KEY_LENGTH} characters.")
        if self.secret_key == self.refresh_secret_key:
            raise ValueError("SECRET_KEY and REFRESH_SECRET_KEY must differ.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Parsed once per process; see the module docstring for test overrides."""
    return Settings()
