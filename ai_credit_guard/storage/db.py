"""
Database connection management.

Provides SQLite connections and write transactions for the ledger.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from ai_credit_guard.core.errors import StorageFailure

logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def get_connection(db_path: str = "ai_credit_guard.db", timeout: float = 10.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    The connection runs in autocommit mode; writers open explicit
    transactions through :func:`write_transaction`.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing writer's lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def write_transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE``.

    The immediate lock is taken before the first read, so concurrent
    read-check-write sequences on the same database are serialized.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


@contextmanager
def storage_errors(action: str) -> Iterator[None]:
    """Translate driver errors into StorageFailure for the current request."""
    try:
        yield
    except sqlite3.Error as e:
        logger.error("Storage failure while trying to %s: %s", action, e)
        raise StorageFailure(f"Unable to {action}: {e}") from e


def to_db_timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp so that string order matches time order."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.strftime(_TIMESTAMP_FORMAT)


def from_db_timestamp(value: str) -> datetime:
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
