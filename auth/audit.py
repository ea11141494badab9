"""
auth/audit.py -- Append-only security log and suspicious-activity heuristics.

Rows describing a state change are written on the same connection as the
change (pass conn) so they commit or roll back together. Rows recorded on
their own (e.g. login_failed for an unknown email) are best effort: a
database failure there is logged and does not fail the request.

Heuristics (detect_suspicious_activity), evaluated after a successful login:
  - failed logins from 3 or more distinct IPs within the last hour
  - a login from an IP not seen in the last 30 days, when other IPs are known
  - 2 or more password changes within the last 24 hours
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from auth.models import DeviceContext, SecurityAction, SecurityLogEntry
from auth.store import AuthStore
from core import clock

logger = logging.getLogger("authcore.audit")

_FAILED_IP_WINDOW = timedelta(hours=1)
_FAILED_IP_THRESHOLD = 3
_KNOWN_IP_WINDOW = timedelta(days=30)
_PASSWORD_CHANGE_WINDOW = timedelta(hours=24)
_PASSWORD_CHANGE_THRESHOLD = 2


@dataclass
class SuspiciousActivity:
    suspicious: bool
    reasons: list[str] = field(default_factory=list)


class AuditLog:
    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def record(
        self,
        action: SecurityAction,
        user_id: Optional[int],
        device: DeviceContext,
        details: Optional[dict[str, Any]] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        entry = SecurityLogEntry(
            action=action.value,
            user_id=user_id,
            ip_address=device.ip,
            user_agent=device.user_agent,
            details=details,
        )
        if conn is not None:
            self.store.insert_security_log(entry, conn=conn)
            return
        try:
            self.store.insert_security_log(entry)
        except SQLAlchemyError:
            logger.exception("Failed to write security log entry action=%s user_id=%s", action.value, user_id)

    def history(self, user_id: int, limit: int = 20) -> list[SecurityLogEntry]:
        return self.store.list_security_logs(user_id, limit=limit)

    def detect_suspicious_activity(self, user_id: int, device: DeviceContext) -> SuspiciousActivity:
        """Evaluate the login heuristics for user_id; records suspicious_activity when any fires.

        Call before recording the current login_success, otherwise the
        current IP is always "known".
        """
        now = clock.utcnow()
        reasons: list[str] = []

        failed_ips = self.store.count_distinct_ips(
            user_id, SecurityAction.login_failed.value, clock.to_iso(now - _FAILED_IP_WINDOW)
        )
        if failed_ips >= _FAILED_IP_THRESHOLD:
            reasons.append("multiple_ips_failed_login")

        known = self.store.known_ips(
            user_id, SecurityAction.login_success.value, clock.to_iso(now - _KNOWN_IP_WINDOW)
        )
        if known and device.ip not in known:
            reasons.append("new_ip_login")

        changes = self.store.count_actions(
            user_id, SecurityAction.password_change.value, clock.to_iso(now - _PASSWORD_CHANGE_WINDOW)
        )
        if changes >= _PASSWORD_CHANGE_THRESHOLD:
            reasons.append("frequent_password_changes")

        if reasons:
            logger.warning("Suspicious activity user_id=%s ip=%s reasons=%s", user_id, device.ip, reasons)
            self.record(
                SecurityAction.suspicious_activity,
                user_id,
                device,
                {"reasons": reasons, "current_ip": device.ip, "known_ips": sorted(known)},
            )
        return SuspiciousActivity(suspicious=bool(reasons), reasons=reasons)
