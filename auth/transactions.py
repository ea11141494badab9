"""
auth/transactions.py -- Retrying transaction combinator.

with_transaction(engine, fn) runs fn(conn) inside engine.begin(): commit on
return, rollback on any exception. If the failure belongs to the transient
lock class (deadlock, lock-wait timeout, serialization failure, SQLite
"database is locked") the whole function is re-run, up to max_retries extra
attempts with exponential backoff plus jitter. Every other exception --
including business errors raised by fn itself -- propagates on the first
occurrence.

Retry policy lives here, not in the store or the services, so it can be tuned
without touching business logic. fn must therefore be safe to re-run: it
receives a fresh connection each attempt and must not have side effects
outside the transaction (no e-mails, no session mutation).
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError

logger = logging.getLogger("authcore.db")

T = TypeVar("T")

# PostgreSQL SQLSTATEs: deadlock_detected, serialization_failure, lock_not_available.
_RETRYABLE_SQLSTATES = {"40P01", "40001", "55P03"}
# MySQL / MariaDB: ER_LOCK_DEADLOCK, ER_LOCK_WAIT_TIMEOUT.
_RETRYABLE_MYSQL_ERRNOS = {1213, 1205}
_RETRYABLE_MESSAGES = (
    "deadlock",
    "lock wait timeout",
    "database is locked",
    "database table is locked",
    "could not serialize access",
)


def is_retryable_db_error(exc: BaseException) -> bool:
    """Return True for the deadlock / lock-timeout class of database failures."""
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return False
    orig = exc.orig
    if getattr(orig, "pgcode", None) in _RETRYABLE_SQLSTATES:
        return True
    args = getattr(orig, "args", ())
    if args and isinstance(args[0], int) and args[0] in _RETRYABLE_MYSQL_ERRNOS:
        return True
    text = str(orig).lower()
    return any(marker in text for marker in _RETRYABLE_MESSAGES)


def with_transaction(
    engine: Engine,
    fn: Callable[[Connection], T],
    *,
    max_retries: int = 3,
    is_retryable: Callable[[BaseException], bool] = is_retryable_db_error,
    backoff_seconds: float = 0.05,
) -> T:
    """Run fn(conn) atomically, retrying transient lock failures.

    Args:
        engine:          SQLAlchemy engine to open transactions on.
        fn:              Unit of work. Receives the transactional connection.
        max_retries:     Extra attempts after the first failure (0 = no retry).
        is_retryable:    Predicate deciding whether an exception is transient.
        backoff_seconds: Base delay; attempt n sleeps base * 2**(n-1) + jitter.
    """
    attempt = 0
    while True:
        try:
            with engine.begin() as conn:
                return fn(conn)
        except Exception as exc:
            if attempt >= max_retries or not is_retryable(exc):
                raise
            attempt += 1
            delay = backoff_seconds * (2 ** (attempt - 1))
            delay += random.uniform(0, backoff_seconds)
            logger.warning(
                "Transient database error (attempt %d/%d), retrying in %.3fs: %s",
                attempt,
                max_retries,
                delay,
                type(exc).__name__,
            )
            time.sleep(delay)
