"""
Repository pattern for data access.

Read side of the credit store: balances, demo sessions, plan limits and
usage counts derived from the ledger.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .db import (
    from_db_timestamp,
    get_connection,
    storage_errors,
    to_db_timestamp,
    utc_now,
    write_transaction,
)
from .models import BudgetStatus, DemoSession, LedgerEntry, LedgerStatus, UsageLimits

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "ai_credit_guard.db"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS credit_wallets (
        user_id TEXT PRIMARY KEY,
        balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS demo_sessions (
        id TEXT PRIMARY KEY,
        device_fingerprint TEXT NOT NULL UNIQUE,
        credits_remaining INTEGER NOT NULL CHECK (credits_remaining >= 0),
        images_remaining INTEGER NOT NULL CHECK (images_remaining >= 0),
        expires_at TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS credit_ledger (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        request_id TEXT NOT NULL UNIQUE,
        scope_key TEXT NOT NULL,
        user_id TEXT,
        demo_session_id TEXT REFERENCES demo_sessions (id),
        operation TEXT NOT NULL CHECK (operation IN ('chat', 'image')),
        mode TEXT NOT NULL,
        model TEXT NOT NULL,
        model_tier TEXT NOT NULL,
        credits INTEGER NOT NULL CHECK (credits >= 0),
        images_reserved INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL CHECK (status IN ('pending', 'committed', 'rolled_back')),
        tokens_in INTEGER NOT NULL DEFAULT 0,
        tokens_out INTEGER NOT NULL DEFAULT 0,
        grounded_queries INTEGER NOT NULL DEFAULT 0,
        image_count INTEGER NOT NULL DEFAULT 0,
        usd_estimate REAL NOT NULL DEFAULT 0,
        reason TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        settled_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_credit_ledger_usage
        ON credit_ledger (scope_key, operation, status, created_at)
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_requests (
        endpoint TEXT NOT NULL,
        scope_key TEXT NOT NULL,
        idempotency_key TEXT NOT NULL,
        response TEXT NOT NULL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (endpoint, scope_key, idempotency_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_limits (
        plan_id TEXT PRIMARY KEY,
        weekly_images INTEGER NOT NULL,
        daily_messages INTEGER NOT NULL,
        soft_usd_cap REAL NOT NULL,
        period_days INTEGER NOT NULL
    )
    """,
)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the wallet, ledger, demo session, idempotency and limits tables.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        # WAL lets readers proceed while a reservation holds the write lock
        conn.execute("PRAGMA journal_mode = WAL")
        with write_transaction(conn):
            for statement in _SCHEMA:
                conn.execute(statement)
    finally:
        conn.close()


def row_to_ledger_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        request_id=row["request_id"],
        scope_key=row["scope_key"],
        user_id=row["user_id"],
        demo_session_id=row["demo_session_id"],
        operation=row["operation"],
        mode=row["mode"],
        model=row["model"],
        model_tier=row["model_tier"],
        credits=row["credits"],
        images_reserved=row["images_reserved"],
        status=LedgerStatus(row["status"]),
        tokens_in=row["tokens_in"],
        tokens_out=row["tokens_out"],
        grounded_queries=row["grounded_queries"],
        image_count=row["image_count"],
        usd_estimate=row["usd_estimate"],
        reason=row["reason"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=from_db_timestamp(row["created_at"]),
        settled_at=from_db_timestamp(row["settled_at"]) if row["settled_at"] else None,
    )


def _row_to_demo_session(row: sqlite3.Row) -> DemoSession:
    return DemoSession(
        id=row["id"],
        device_fingerprint=row["device_fingerprint"],
        credits_remaining=row["credits_remaining"],
        images_remaining=row["images_remaining"],
        expires_at=from_db_timestamp(row["expires_at"]),
    )


def fetch_or_create_demo_session(
    conn: sqlite3.Connection,
    device_fingerprint: str,
    now: datetime,
    credits: int,
    images: int,
    session_days: int,
) -> DemoSession:
    """Load the device's demo session, creating or resetting it as needed.

    Must run inside a write transaction. An expired session is reset to the
    full allowance with a fresh expiry.
    """
    row = conn.execute(
        "SELECT * FROM demo_sessions WHERE device_fingerprint = ?",
        (device_fingerprint,),
    ).fetchone()
    expires_at = to_db_timestamp(now + timedelta(days=session_days))

    if row is None:
        session_id = str(uuid.uuid4())
        conn.execute(
            """
            INSERT INTO demo_sessions
            (id, device_fingerprint, credits_remaining, images_remaining, expires_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (session_id, device_fingerprint, credits, images, expires_at, to_db_timestamp(now)),
        )
        logger.info("Created demo session %s for device %s", session_id, device_fingerprint)
    elif row["expires_at"] <= to_db_timestamp(now):
        session_id = row["id"]
        conn.execute(
            """
            UPDATE demo_sessions
            SET credits_remaining = ?, images_remaining = ?, expires_at = ?
            WHERE id = ?
            """,
            (credits, images, expires_at, session_id),
        )
        logger.info("Reset expired demo session %s", session_id)
    else:
        return _row_to_demo_session(row)

    row = conn.execute("SELECT * FROM demo_sessions WHERE id = ?", (session_id,)).fetchone()
    return _row_to_demo_session(row)


class UsageRepository:
    """Repository for balances, limits and ledger-derived usage.

    Every method opens its own connection, so an instance is safe to share
    between concurrent requests.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        *,
        default_limits: Optional[UsageLimits] = None,
        wallet_starting_credits: int = 0,
        demo_credits: int = 15,
        demo_images: int = 1,
        demo_session_days: int = 14,
        busy_timeout: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the repository.

        Args:
            db_path: Path to SQLite database file
            default_limits: Limits used for plans without a usage_limits row
            wallet_starting_credits: Balance reported for users who have no wallet yet
            demo_credits: Credits granted to a new or reset demo session
            demo_images: Images granted to a new or reset demo session
            demo_session_days: Lifetime of a demo session
            busy_timeout: Seconds to wait for the write lock
            clock: Source of the current UTC time
        """
        self.db_path = db_path
        self.default_limits = default_limits or UsageLimits()
        self.wallet_starting_credits = wallet_starting_credits
        self.demo_credits = demo_credits
        self.demo_images = demo_images
        self.demo_session_days = demo_session_days
        self.busy_timeout = busy_timeout
        self.clock = clock

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, timeout=self.busy_timeout)

    def get_balance(self, user_id: str) -> int:
        """Current wallet balance; a user without a wallet yet gets the starting grant."""
        with storage_errors("read wallet balance"):
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT balance FROM credit_wallets WHERE user_id = ?", (user_id,)
                ).fetchone()
                return int(row["balance"]) if row else self.wallet_starting_credits
            finally:
                conn.close()

    def get_or_create_demo_session(self, device_fingerprint: str) -> DemoSession:
        with storage_errors("read demo session"):
            conn = self._connect()
            try:
                with write_transaction(conn):
                    return fetch_or_create_demo_session(
                        conn,
                        device_fingerprint,
                        self.clock(),
                        self.demo_credits,
                        self.demo_images,
                        self.demo_session_days,
                    )
            finally:
                conn.close()

    def get_usage_limits(self, plan_id: str) -> UsageLimits:
        """Get limits for a plan, falling back to the configured defaults."""
        with storage_errors("read usage limits"):
            conn = self._connect()
            try:
                row = conn.execute(
                    """
                    SELECT weekly_images, daily_messages, soft_usd_cap, period_days
                    FROM usage_limits WHERE plan_id = ?
                    """,
                    (plan_id,),
                ).fetchone()
            finally:
                conn.close()
        if row is None:
            return self.default_limits
        return UsageLimits(
            weekly_images=int(row["weekly_images"]),
            daily_messages=int(row["daily_messages"]),
            soft_usd_cap=float(row["soft_usd_cap"]),
            period_days=int(row["period_days"]),
        )

    def set_usage_limits(self, plan_id: str, limits: UsageLimits) -> None:
        with storage_errors("write usage limits"):
            conn = self._connect()
            try:
                with write_transaction(conn):
                    conn.execute(
                        """
                        INSERT INTO usage_limits
                        (plan_id, weekly_images, daily_messages, soft_usd_cap, period_days)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT (plan_id) DO UPDATE SET
                            weekly_images = excluded.weekly_images,
                            daily_messages = excluded.daily_messages,
                            soft_usd_cap = excluded.soft_usd_cap,
                            period_days = excluded.period_days
                        """,
                        (
                            plan_id,
                            limits.weekly_images,
                            limits.daily_messages,
                            limits.soft_usd_cap,
                            limits.period_days,
                        ),
                    )
            finally:
                conn.close()

    def count_committed(self, scope_key: str, operation: str, since: datetime) -> int:
        """Count committed entries of one operation for a scope since a point in time."""
        with storage_errors("count committed usage"):
            conn = self._connect()
            try:
                row = conn.execute(
                    """
                    SELECT COUNT(*) AS total FROM credit_ledger
                    WHERE scope_key = ? AND operation = ? AND status = ? AND created_at >= ?
                    """,
                    (scope_key, operation, LedgerStatus.COMMITTED.value, to_db_timestamp(since)),
                ).fetchone()
                return int(row["total"] or 0)
            finally:
                conn.close()

    def get_budget_status(self, user_id: str, limits: UsageLimits) -> BudgetStatus:
        """Sum committed USD spend of a user over the plan's rolling window.

        Args:
            user_id: Authenticated user id
            limits: Plan limits supplying the cap and window length

        Returns:
            BudgetStatus for the window ending now
        """
        cutoff = self.clock() - timedelta(days=limits.period_days)
        with storage_errors("read budget status"):
            conn = self._connect()
            try:
                row = conn.execute(
                    """
                    SELECT SUM(usd_estimate) AS total_usd FROM credit_ledger
                    WHERE user_id = ? AND status = ? AND created_at >= ?
                    """,
                    (user_id, LedgerStatus.COMMITTED.value, to_db_timestamp(cutoff)),
                ).fetchone()
            finally:
                conn.close()
        return BudgetStatus(
            total_usd=round(float(row["total_usd"] or 0), 6),
            soft_usd_cap=limits.soft_usd_cap,
            period_days=limits.period_days,
        )

    def get_entry(self, request_id: str) -> Optional[LedgerEntry]:
        with storage_errors("read ledger entry"):
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT * FROM credit_ledger WHERE request_id = ?", (request_id,)
                ).fetchone()
                return row_to_ledger_entry(row) if row else None
            finally:
                conn.close()

    def get_recent_entries(self, scope_key: Optional[str] = None, limit: int = 50) -> List[LedgerEntry]:
        """Get recent ledger entries, newest first, optionally for one scope."""
        query = "SELECT * FROM credit_ledger"
        params: list = []
        if scope_key:
            query += " WHERE scope_key = ?"
            params.append(scope_key)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        with storage_errors("read ledger entries"):
            conn = self._connect()
            try:
                return [row_to_ledger_entry(row) for row in conn.execute(query, params).fetchall()]
            finally:
                conn.close()
