"""
auth/store.py -- SQLAlchemy Core persistence layer for the security core.

Pattern: Repository + Data Mapper.
AuthStore is the repository; the _row_to_* functions are the mappers.
Services and routes never touch SQL directly.

Transactions:
  Every method takes an optional `conn`. When given, the statement runs on
  that connection and the caller's transaction decides commit/rollback (this
  is how multi-row flows compose under auth.transactions.with_transaction).
  When omitted, the method opens its own short transaction via engine.begin().
  Methods never open a second connection while holding one, so the store is
  safe on single-connection pools (in-memory SQLite).

Single-use semantics:
  Anything that must succeed at most once (refresh-token rotation, backup
  codes, verification and reset tokens) is a conditional UPDATE whose WHERE
  clause includes the "still usable" predicate. rowcount == 1 means this
  caller won; 0 means someone else already consumed it.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only hashes of bearer artifacts are stored -- see auth/crypto.py.

Timestamps are ISO-8601 UTC strings from core.clock; lexical comparison in
SQL is chronological comparison.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import (
    BackupCodeInfo,
    OneTimeTokenRecord,
    RefreshTokenRecord,
    SecurityLogEntry,
    User,
)
from core import clock

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-cased
    Column("password_hash", Text, nullable=False),
    Column("full_name", String(255), nullable=False),
    Column("role", String(30), nullable=False, server_default="user"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("mfa_enabled", Integer, nullable=False, server_default="0"),
    Column("mfa_secret", String(64)),  # base32, NULL unless MFA is enabled
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("last_login", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("device_info", String(255)),
    Column("ip_address", String(64)),
    Column("token_family", String(64), nullable=False, index=True),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("expires_at", String(32), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_backup_codes = Table(
    "mfa_backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_email_verifications = Table(
    "email_verifications",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("expires_at", String(32), nullable=False),
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

_password_history = Table(
    "password_history",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("password_hash", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
)

_rate_limits = Table(
    "rate_limits",
    _metadata,
    Column("key", String(255), primary_key=True),  # "action:identifier"
    Column("points", Integer, nullable=False),
    Column("expire_at", String(32), nullable=False),
)

_security_logs = Table(
    "security_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer),  # NULL for unknown-email failures and after anonymization
    Column("action", String(50), nullable=False),
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("details", Text),  # JSON object
    Column("created_at", String(32), nullable=False),
)

Index("ix_security_logs_user_action", _security_logs.c.user_id, _security_logs.c.action)

_ONE_TIME_TABLES = {
    "email_verification": _email_verifications,
    "password_reset": _password_resets,
}


# ---------------------------------------------------------------------------
# SQLite pragmas
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and a busy timeout on every new connection.

    WAL lets readers proceed during writes. busy_timeout makes concurrent
    writers wait briefly instead of failing at once with "database is locked";
    whatever still fails is retried by with_transaction.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for every table the security core owns.

    Usage:
        store = AuthStore("sqlite:///authcore.db")
        user_id = store.create_user(User(email="a@example.com", password_hash=h, full_name="A"))
        user = store.get_user_by_email("A@example.com")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragmas)
        _metadata.create_all(self.engine)

    @contextmanager
    def _tx(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as own:
            yield own

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, conn: Optional[Connection] = None) -> int:
        """Insert a user and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(
                _users.insert().values(
                    email=user.email.strip().lower(),
                    password_hash=user.password_hash,
                    full_name=user.full_name,
                    role=user.role,
                    is_verified=1 if user.is_verified else 0,
                    mfa_enabled=1 if user.mfa_enabled else 0,
                    mfa_secret=user.mfa_secret,
                    failed_login_attempts=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_user_by_email(self, email: str, conn: Optional[Connection] = None) -> User | None:
        """Case-insensitive lookup (emails are stored lower-cased)."""
        with self._tx(conn) as c:
            row = c.execute(_users.select().where(_users.c.email == email.strip().lower())).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_id(self, user_id: int, conn: Optional[Connection] = None) -> User | None:
        with self._tx(conn) as c:
            row = c.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_user(self, user_id: int, conn: Optional[Connection] = None, **fields: Any) -> bool:
        """Update mutable columns on a user. Booleans and datetimes are
        converted to their stored form. Returns True if a row was updated."""
        values: dict[str, Any] = {}
        for name, value in fields.items():
            if isinstance(value, bool):
                value = 1 if value else 0
            elif isinstance(value, datetime):
                value = clock.to_iso(value)
            values[name] = value
        values["updated_at"] = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def increment_failed_attempts(self, user_id: int, conn: Optional[Connection] = None) -> int:
        """Atomically add one failed attempt and return the new count."""
        with self._tx(conn) as c:
            c.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(failed_login_attempts=_users.c.failed_login_attempts + 1, updated_at=clock.now_iso())
            )
            count = c.execute(select(_users.c.failed_login_attempts).where(_users.c.id == user_id)).scalar()
        return count or 0

    def reset_login_state(self, user_id: int, stamp_login: bool = False, conn: Optional[Connection] = None) -> None:
        """Clear failed attempts and any lock; optionally stamp last_login."""
        values: dict[str, Any] = {"failed_login_attempts": 0, "locked_until": None}
        if stamp_login:
            values["last_login"] = clock.now_iso()
        self.update_user(user_id, conn=conn, **values)

    def delete_user(self, user_id: int, conn: Optional[Connection] = None) -> bool:
        with self._tx(conn) as c:
            result = c.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def insert_refresh_token(self, record: RefreshTokenRecord, conn: Optional[Connection] = None) -> int:
        with self._tx(conn) as c:
            result = c.execute(
                _refresh_tokens.insert().values(
                    user_id=record.user_id,
                    token_hash=record.token_hash,
                    device_info=record.device_info,
                    ip_address=record.ip_address,
                    token_family=record.token_family,
                    revoked=0,
                    expires_at=record.expires_at,
                    created_at=clock.now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str, conn: Optional[Connection] = None) -> RefreshTokenRecord | None:
        with self._tx(conn) as c:
            row = c.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def claim_refresh_token(self, token_hash: str, conn: Optional[Connection] = None) -> bool:
        """Revoke a refresh token only if it is still usable.

        Returns True for exactly one caller per token: the one whose UPDATE
        flipped revoked 0 -> 1 on an unexpired row.
        """
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
                .values(revoked=1, revoked_at=now)
            )
        return result.rowcount == 1

    def revoke_refresh_token(self, token_hash: str, conn: Optional[Connection] = None) -> bool:
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.token_hash == token_hash) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now)
            )
        return result.rowcount > 0

    def revoke_refresh_token_by_id(self, user_id: int, token_id: int, conn: Optional[Connection] = None) -> bool:
        """Revoke one token row. user_id is part of the WHERE clause so a user
        can never revoke another user's session by guessing IDs."""
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.id == token_id)
                    & (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked == 0)
                )
                .values(revoked=1, revoked_at=now)
            )
        return result.rowcount > 0

    def revoke_token_family(self, user_id: int, family: str, conn: Optional[Connection] = None) -> int:
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.token_family == family)
                    & (_refresh_tokens.c.revoked == 0)
                )
                .values(revoked=1, revoked_at=now)
            )
        return result.rowcount

    def revoke_all_user_tokens(self, user_id: int, conn: Optional[Connection] = None) -> int:
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now)
            )
        return result.rowcount

    def list_active_refresh_tokens(self, user_id: int, conn: Optional[Connection] = None) -> list[RefreshTokenRecord]:
        """Unrevoked, unexpired tokens for a user, newest first."""
        now = clock.now_iso()
        with self._tx(conn) as c:
            rows = c.execute(
                _refresh_tokens.select()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.revoked == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
                .order_by(_refresh_tokens.c.created_at.desc(), _refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def delete_stale_refresh_tokens(self, revoked_before: str, conn: Optional[Connection] = None) -> int:
        """Delete expired tokens and tokens revoked before the given cut-off.

        Recently revoked rows are kept so reuse of a rotated token can still
        be recognised for the retention period.
        """
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.expires_at <= now)
                    | ((_refresh_tokens.c.revoked == 1) & (_refresh_tokens.c.revoked_at < revoked_before))
                )
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # MFA backup codes
    # ------------------------------------------------------------------

    def replace_backup_codes(self, user_id: int, code_hashes: list[str], conn: Optional[Connection] = None) -> None:
        """Delete the user's whole set and insert a new one."""
        now = clock.now_iso()
        with self._tx(conn) as c:
            c.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
            if code_hashes:
                c.execute(
                    _backup_codes.insert(),
                    [{"user_id": user_id, "code_hash": h, "used": 0, "created_at": now} for h in code_hashes],
                )

    def consume_backup_code(self, user_id: int, code_hash: str, conn: Optional[Connection] = None) -> bool:
        """Mark an unused code as used. True only for the first successful caller."""
        with self._tx(conn) as c:
            code_id = c.execute(
                select(_backup_codes.c.id)
                .where(
                    (_backup_codes.c.user_id == user_id)
                    & (_backup_codes.c.code_hash == code_hash)
                    & (_backup_codes.c.used == 0)
                )
                .limit(1)
            ).scalar()
            if code_id is None:
                return False
            result = c.execute(
                _backup_codes.update()
                .where((_backup_codes.c.id == code_id) & (_backup_codes.c.used == 0))
                .values(used=1, used_at=clock.now_iso())
            )
        return result.rowcount == 1

    def list_backup_codes(self, user_id: int, conn: Optional[Connection] = None) -> list[BackupCodeInfo]:
        with self._tx(conn) as c:
            rows = c.execute(
                _backup_codes.select().where(_backup_codes.c.user_id == user_id).order_by(_backup_codes.c.id)
            ).fetchall()
        return [
            BackupCodeInfo(id=r.id, used=bool(r.used), used_at=r.used_at, created_at=r.created_at) for r in rows
        ]

    def delete_backup_codes(self, user_id: int, conn: Optional[Connection] = None) -> int:
        with self._tx(conn) as c:
            result = c.execute(_backup_codes.delete().where(_backup_codes.c.user_id == user_id))
        return result.rowcount

    # ------------------------------------------------------------------
    # E-mail verification and password reset tokens
    # ------------------------------------------------------------------
    # kind is "email_verification" or "password_reset"; both tables share
    # one shape and one lifecycle.

    def replace_one_time_token(
        self,
        kind: str,
        user_id: int,
        token_hash: str,
        expires_at: str,
        conn: Optional[Connection] = None,
    ) -> None:
        """Insert a new token for the user, deleting every earlier one."""
        table = _ONE_TIME_TABLES[kind]
        with self._tx(conn) as c:
            c.execute(table.delete().where(table.c.user_id == user_id))
            c.execute(
                table.insert().values(
                    user_id=user_id,
                    token_hash=token_hash,
                    expires_at=expires_at,
                    used=0,
                    created_at=clock.now_iso(),
                )
            )

    def get_valid_one_time_token(
        self, kind: str, token_hash: str, conn: Optional[Connection] = None
    ) -> OneTimeTokenRecord | None:
        """Return the token if it is unused and unexpired. Read-only."""
        table = _ONE_TIME_TABLES[kind]
        now = clock.now_iso()
        with self._tx(conn) as c:
            row = c.execute(
                table.select().where((table.c.token_hash == token_hash) & (table.c.used == 0) & (table.c.expires_at > now))
            ).fetchone()
        return _row_to_one_time_token(row) if row is not None else None

    def consume_one_time_token(self, kind: str, token_hash: str, conn: Optional[Connection] = None) -> int | None:
        """Mark a usable token as used and return its user_id.

        None means the token was unknown, expired, or already consumed by a
        concurrent request.
        """
        table = _ONE_TIME_TABLES[kind]
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(
                table.update()
                .where((table.c.token_hash == token_hash) & (table.c.used == 0) & (table.c.expires_at > now))
                .values(used=1)
            )
            if result.rowcount != 1:
                return None
            return c.execute(select(table.c.user_id).where(table.c.token_hash == token_hash)).scalar()

    def delete_dead_one_time_tokens(self, kind: str, conn: Optional[Connection] = None) -> int:
        """Delete used or expired tokens of one kind."""
        table = _ONE_TIME_TABLES[kind]
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(table.delete().where((table.c.used == 1) | (table.c.expires_at <= now)))
        return result.rowcount

    # ------------------------------------------------------------------
    # Password history
    # ------------------------------------------------------------------

    def add_password_history(
        self, user_id: int, password_hash: str, keep: int, conn: Optional[Connection] = None
    ) -> None:
        """Append a hash and trim the user's history to the newest `keep` rows."""
        with self._tx(conn) as c:
            c.execute(
                _password_history.insert().values(
                    user_id=user_id, password_hash=password_hash, created_at=clock.now_iso()
                )
            )
            # Two statements rather than DELETE ... NOT IN (SELECT ... LIMIT):
            # MySQL rejects LIMIT inside IN subqueries.
            keep_ids = [
                r[0]
                for r in c.execute(
                    select(_password_history.c.id)
                    .where(_password_history.c.user_id == user_id)
                    .order_by(_password_history.c.id.desc())
                    .limit(keep)
                )
            ]
            c.execute(
                _password_history.delete().where(
                    (_password_history.c.user_id == user_id) & (_password_history.c.id.not_in(keep_ids))
                )
            )

    def get_password_history(self, user_id: int, limit: int, conn: Optional[Connection] = None) -> list[str]:
        """Most recent password hashes first."""
        with self._tx(conn) as c:
            rows = c.execute(
                select(_password_history.c.password_hash)
                .where(_password_history.c.user_id == user_id)
                .order_by(_password_history.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------

    def purge_expired_rate_limits(self, conn: Optional[Connection] = None) -> int:
        now = clock.now_iso()
        with self._tx(conn) as c:
            result = c.execute(_rate_limits.delete().where(_rate_limits.c.expire_at <= now))
        return result.rowcount

    def get_rate_limit(self, key: str, conn: Optional[Connection] = None) -> tuple[int, str] | None:
        """Return (points, expire_at) for an unexpired window, else None."""
        now = clock.now_iso()
        with self._tx(conn) as c:
            row = c.execute(
                select(_rate_limits.c.points, _rate_limits.c.expire_at).where(
                    (_rate_limits.c.key == key) & (_rate_limits.c.expire_at > now)
                )
            ).fetchone()
        return (row.points, row.expire_at) if row is not None else None

    def open_rate_limit_window(self, key: str, expire_at: str, conn: Optional[Connection] = None) -> None:
        """Start a window with one point. Raises IntegrityError if one exists."""
        with self._tx(conn) as c:
            c.execute(_rate_limits.insert().values(key=key, points=1, expire_at=expire_at))

    def add_rate_limit_point(self, key: str, conn: Optional[Connection] = None) -> None:
        with self._tx(conn) as c:
            c.execute(_rate_limits.update().where(_rate_limits.c.key == key).values(points=_rate_limits.c.points + 1))

    def delete_rate_limit(self, key: str, conn: Optional[Connection] = None) -> None:
        with self._tx(conn) as c:
            c.execute(_rate_limits.delete().where(_rate_limits.c.key == key))

    # ------------------------------------------------------------------
    # Security log
    # ------------------------------------------------------------------

    def insert_security_log(self, entry: SecurityLogEntry, conn: Optional[Connection] = None) -> int:
        with self._tx(conn) as c:
            result = c.execute(
                _security_logs.insert().values(
                    user_id=entry.user_id,
                    action=entry.action,
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    details=json.dumps(entry.details) if entry.details else None,
                    created_at=entry.created_at or clock.now_iso(),
                )
            )
            return result.inserted_primary_key[0]

    def list_security_logs(
        self, user_id: int, limit: int = 50, conn: Optional[Connection] = None
    ) -> list[SecurityLogEntry]:
        with self._tx(conn) as c:
            rows = c.execute(
                _security_logs.select()
                .where(_security_logs.c.user_id == user_id)
                .order_by(_security_logs.c.created_at.desc(), _security_logs.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_security_log(r) for r in rows]

    def count_distinct_ips(
        self, user_id: int, action: str, since: str, conn: Optional[Connection] = None
    ) -> int:
        with self._tx(conn) as c:
            count = c.execute(
                select(func.count(func.distinct(_security_logs.c.ip_address))).where(
                    (_security_logs.c.user_id == user_id)
                    & (_security_logs.c.action == action)
                    & (_security_logs.c.created_at > since)
                )
            ).scalar()
        return count or 0

    def known_ips(self, user_id: int, action: str, since: str, conn: Optional[Connection] = None) -> set[str]:
        with self._tx(conn) as c:
            rows = c.execute(
                select(_security_logs.c.ip_address)
                .distinct()
                .where(
                    (_security_logs.c.user_id == user_id)
                    & (_security_logs.c.action == action)
                    & (_security_logs.c.created_at > since)
                )
            ).fetchall()
        return {r[0] for r in rows if r[0] is not None}

    def count_actions(self, user_id: int, action: str, since: str, conn: Optional[Connection] = None) -> int:
        with self._tx(conn) as c:
            count = c.execute(
                select(func.count())
                .select_from(_security_logs)
                .where(
                    (_security_logs.c.user_id == user_id)
                    & (_security_logs.c.action == action)
                    & (_security_logs.c.created_at > since)
                )
            ).scalar()
        return count or 0

    def anonymize_security_logs(self, user_id: int, conn: Optional[Connection] = None) -> int:
        """Detach log rows from a deleted user, keeping the old id in details."""
        with self._tx(conn) as c:
            rows = c.execute(
                select(_security_logs.c.id, _security_logs.c.details).where(_security_logs.c.user_id == user_id)
            ).fetchall()
            for row in rows:
                details = json.loads(row.details) if row.details else {}
                details["deleted_user_id"] = user_id
                c.execute(
                    _security_logs.update()
                    .where(_security_logs.c.id == row.id)
                    .values(user_id=None, details=json.dumps(details))
                )
        return len(rows)

    def delete_security_logs_before(self, cutoff: str, conn: Optional[Connection] = None) -> int:
        with self._tx(conn) as c:
            result = c.execute(_security_logs.delete().where(_security_logs.c.created_at < cutoff))
        return result.rowcount

    # ------------------------------------------------------------------
    # Account deletion
    # ------------------------------------------------------------------

    def purge_user_data(self, user_id: int, conn: Optional[Connection] = None) -> None:
        """Delete every row owned by the user except the (anonymized) audit log."""
        with self._tx(conn) as c:
            c.execute(delete(_refresh_tokens).where(_refresh_tokens.c.user_id == user_id))
            c.execute(delete(_backup_codes).where(_backup_codes.c.user_id == user_id))
            c.execute(delete(_email_verifications).where(_email_verifications.c.user_id == user_id))
            c.execute(delete(_password_resets).where(_password_resets.c.user_id == user_id))
            c.execute(delete(_password_history).where(_password_history.c.user_id == user_id))
            self.anonymize_security_logs(user_id, conn=c)
            c.execute(delete(_users).where(_users.c.id == user_id))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        full_name=row.full_name,
        role=row.role,
        is_verified=bool(row.is_verified),
        mfa_enabled=bool(row.mfa_enabled),
        mfa_secret=row.mfa_secret,
        failed_login_attempts=row.failed_login_attempts or 0,
        locked_until=clock.from_iso(row.locked_until),
        last_login=row.last_login,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        device_info=row.device_info,
        ip_address=row.ip_address,
        token_family=row.token_family,
        revoked=bool(row.revoked),
        revoked_at=row.revoked_at,
        expires_at=row.expires_at,
        created_at=row.created_at,
    )


def _row_to_one_time_token(row) -> OneTimeTokenRecord:
    return OneTimeTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        used=bool(row.used),
        created_at=row.created_at,
    )


def _row_to_security_log(row) -> SecurityLogEntry:
    return SecurityLogEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        details=json.loads(row.details) if row.details else None,
        created_at=row.created_at,
    )
