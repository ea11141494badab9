"""
auth/email.py -- Outbound notification collaborator.

The security core only ever asks "send this kind of message, with this token,
to this address". Delivery is fire-and-forget: AuthService calls senders after
the security transaction has committed, and a failed send is logged, never
rolled back into the transaction (tokens already stored stay valid).

SmtpEmailSender with no SMTP_HOST configured logs the message instead of
sending it (development mode). Addresses are redacted in logs; links carrying
tokens are only logged when DEBUG is on.
"""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.text import MIMEText
from enum import Enum
from typing import Optional, Protocol
from urllib.parse import urlencode

from core.config import Settings

logger = logging.getLogger("authcore.email")


class EmailKind(str, Enum):
    verification = "verification"
    password_reset = "password_reset"
    mfa_enabled = "mfa_enabled"
    mfa_disabled = "mfa_disabled"
    suspicious_activity = "suspicious_activity"


class EmailSender(Protocol):
    def send(self, kind: EmailKind, address: str, token: Optional[str] = None) -> None: ...


_SUBJECTS = {
    EmailKind.verification: "Verify your email address",
    EmailKind.password_reset: "Reset your password",
    EmailKind.mfa_enabled: "Two-factor authentication enabled",
    EmailKind.mfa_disabled: "Two-factor authentication disabled",
    EmailKind.suspicious_activity: "Unusual activity on your account",
}

_LINK_PATHS = {
    EmailKind.verification: "/api/v1/auth/verify-email",
    EmailKind.password_reset: "/api/v1/auth/password/reset",
}


def redact_email(address: str) -> str:
    if "@" not in address:
        return "redacted"
    local, domain = address.split("@", 1)
    return f"{local[:2]}***@{domain}"


class SmtpEmailSender:
    """EmailSender backed by smtplib (STARTTLS or implicit TLS)."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    @property
    def is_configured(self) -> bool:
        return bool(self.settings.smtp_host and (self.settings.from_email or self.settings.smtp_user))

    def link_for(self, kind: EmailKind, token: str) -> str:
        return f"{self.settings.app_url.rstrip('/')}{_LINK_PATHS[kind]}?{urlencode({'token': token})}"

    def render(self, kind: EmailKind, token: Optional[str]) -> str:
        app = self.settings.app_name
        if kind is EmailKind.verification:
            return (
                f"Welcome to {app}.\n\nConfirm your email address by opening this link:\n"
                f"{self.link_for(kind, token or '')}\n\n"
                f"The link expires in {self.settings.email_verification_ttl_hours} hours."
            )
        if kind is EmailKind.password_reset:
            return (
                "Someone asked to reset the password for your account.\n\n"
                f"{self.link_for(kind, token or '')}\n\n"
                f"The link expires in {self.settings.password_reset_ttl_minutes} minutes. "
                "If this was not you, you can ignore this message."
            )
        if kind is EmailKind.mfa_enabled:
            return f"Two-factor authentication is now enabled on your {app} account."
        if kind is EmailKind.mfa_disabled:
            return (
                f"Two-factor authentication was disabled on your {app} account. "
                "If this was not you, reset your password immediately."
            )
        return (
            f"We noticed unusual activity on your {app} account and signed out the affected sessions. "
            "If this was not you, change your password."
        )

    def send(self, kind: EmailKind, address: str, token: Optional[str] = None) -> None:
        body = self.render(kind, token)
        subject = _SUBJECTS[kind]

        if not self.is_configured:
            if self.settings.debug:
                logger.info("Email (dev mode) kind=%s to=%s\n%s", kind.value, redact_email(address), body)
            else:
                logger.info("Email (dev mode) kind=%s to=%s", kind.value, redact_email(address))
            return

        sender = self.settings.from_email or self.settings.smtp_user
        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = f"{self.settings.app_name}: {subject}"
        msg["From"] = sender
        msg["To"] = address

        context = ssl.create_default_context()
        if self.settings.smtp_use_tls:
            with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=30) as server:
                server.starttls(context=context)
                if self.settings.smtp_user and self.settings.smtp_password:
                    server.login(self.settings.smtp_user, self.settings.smtp_password)
                server.sendmail(sender, [address], msg.as_string())
        else:
            with smtplib.SMTP_SSL(
                self.settings.smtp_host, self.settings.smtp_port, context=context, timeout=30
            ) as server:
                if self.settings.smtp_user and self.settings.smtp_password:
                    server.login(self.settings.smtp_user, self.settings.smtp_password)
                server.sendmail(sender, [address], msg.as_string())
        logger.info("Email sent kind=%s to=%s", kind.value, redact_email(address))
