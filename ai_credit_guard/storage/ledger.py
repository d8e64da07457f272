"""
Credit ledger and wallet store.

Implements the two-phase reserve/commit/rollback protocol over user wallets
and demo sessions. Each step runs in one ``BEGIN IMMEDIATE`` transaction, so
balance checks and decrements cannot interleave between concurrent requests,
and the UNIQUE ``request_id`` column guarantees one ledger row per attempt.
"""

import json
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ai_credit_guard.core.errors import LedgerStateError

from .db import get_connection, storage_errors, to_db_timestamp, utc_now, write_transaction
from .models import LedgerStatus, ReserveResult
from .repository import DEFAULT_DB_PATH, fetch_or_create_demo_session

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
INSUFFICIENT_IMAGE_QUOTA = "INSUFFICIENT_IMAGE_QUOTA"
REQUEST_IN_PROGRESS = "REQUEST_IN_PROGRESS"
REQUEST_ALREADY_COMMITTED = "REQUEST_ALREADY_COMMITTED"
RESERVATION_EXPIRED = "RESERVATION_EXPIRED"

_DUPLICATE_CODES = {
    LedgerStatus.PENDING: REQUEST_IN_PROGRESS,
    LedgerStatus.COMMITTED: REQUEST_ALREADY_COMMITTED,
}


def _dump_metadata(metadata: Optional[Dict[str, Any]]) -> str:
    return json.dumps(metadata or {}, sort_keys=True, default=str)


class CreditLedger:
    """Atomic reserve/commit/rollback over per-identity balances.

    A reservation decrements the balance up front and records a ``pending``
    entry. Commit attaches the observed usage; rollback refunds exactly what
    was reserved. Entries are never deleted.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        *,
        wallet_starting_credits: int = 0,
        demo_credits: int = 15,
        demo_images: int = 1,
        demo_session_days: int = 14,
        busy_timeout: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.wallet_starting_credits = wallet_starting_credits
        self.demo_credits = demo_credits
        self.demo_images = demo_images
        self.demo_session_days = demo_session_days
        self.busy_timeout = busy_timeout
        self.clock = clock

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, timeout=self.busy_timeout)

    def _existing_status(self, conn: sqlite3.Connection, request_id: str) -> Optional[LedgerStatus]:
        row = conn.execute(
            "SELECT status FROM credit_ledger WHERE request_id = ?", (request_id,)
        ).fetchone()
        return LedgerStatus(row["status"]) if row else None

    def _write_pending_entry(
        self,
        conn: sqlite3.Connection,
        existing: Optional[LedgerStatus],
        values: Dict[str, Any],
    ) -> None:
        """Insert a pending entry, or re-arm a rolled back one for a retry."""
        if existing is None:
            columns = ", ".join(values)
            placeholders = ", ".join("?" for _ in values)
            conn.execute(
                f"INSERT INTO credit_ledger ({columns}, status) VALUES ({placeholders}, ?)",
                (*values.values(), LedgerStatus.PENDING.value),
            )
            return

        assignments = ", ".join(f"{column} = ?" for column in values if column != "request_id")
        params = [value for column, value in values.items() if column != "request_id"]
        conn.execute(
            f"""
            UPDATE credit_ledger
            SET {assignments}, status = ?, tokens_in = 0, tokens_out = 0,
                grounded_queries = 0, image_count = 0, usd_estimate = 0,
                reason = NULL, settled_at = NULL
            WHERE request_id = ?
            """,
            (*params, LedgerStatus.PENDING.value, values["request_id"]),
        )

    def reserve_user_credits(
        self,
        *,
        user_id: str,
        request_id: str,
        operation: str,
        mode: str,
        model: str,
        model_tier: str,
        credits: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReserveResult:
        """Reserve credits from an authenticated user's wallet.

        The wallet is created on first contact. If ``request_id`` already has a
        pending or committed entry nothing is mutated and the existing status
        is reported; a rolled back entry is reused for a fresh reservation.

        Args:
            user_id: Wallet owner
            request_id: Composite id of (endpoint, scope, idempotency key)
            operation: ``chat`` or ``image``
            mode: Effective chat mode
            model: Model that will serve the request
            model_tier: Model tier used for pricing
            credits: Price to hold
            metadata: Free-form audit data stored with the entry

        Returns:
            ReserveResult; ``success`` is False on exhaustion or duplicates

        Raises:
            StorageFailure: If the database cannot be reached
        """
        if credits < 0:
            raise ValueError("credits must be >= 0")

        now = self.clock()
        with storage_errors("reserve user credits"):
            conn = self._connect()
            try:
                with write_transaction(conn):
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO credit_wallets (user_id, balance, updated_at)
                        VALUES (?, ?, ?)
                        """,
                        (user_id, self.wallet_starting_credits, to_db_timestamp(now)),
                    )
                    balance = int(conn.execute(
                        "SELECT balance FROM credit_wallets WHERE user_id = ?", (user_id,)
                    ).fetchone()["balance"])

                    existing = self._existing_status(conn, request_id)
                    if existing in _DUPLICATE_CODES:
                        logger.info("Duplicate reservation for %s (status=%s)", request_id, existing.value)
                        return ReserveResult(
                            success=False,
                            error_code=_DUPLICATE_CODES[existing],
                            credits_remaining=balance,
                            ledger_status=existing,
                            duplicate=True,
                        )

                    if balance < credits:
                        logger.info(
                            "Insufficient credits for user %s: balance=%d price=%d", user_id, balance, credits
                        )
                        return ReserveResult(
                            success=False,
                            error_code=INSUFFICIENT_CREDITS,
                            credits_remaining=balance,
                        )

                    remaining = balance - credits
                    conn.execute(
                        "UPDATE credit_wallets SET balance = ?, updated_at = ? WHERE user_id = ?",
                        (remaining, to_db_timestamp(now), user_id),
                    )
                    self._write_pending_entry(conn, existing, {
                        "request_id": request_id,
                        "scope_key": f"user:{user_id}",
                        "user_id": user_id,
                        "demo_session_id": None,
                        "operation": operation,
                        "mode": mode,
                        "model": model,
                        "model_tier": model_tier,
                        "credits": credits,
                        "images_reserved": 0,
                        "metadata": _dump_metadata(metadata),
                        "created_at": to_db_timestamp(now),
                    })
            finally:
                conn.close()

        logger.info("Reserved %d credits for %s (remaining=%d)", credits, request_id, remaining)
        return ReserveResult(
            success=True,
            error_code=None,
            credits_remaining=remaining,
            ledger_status=LedgerStatus.PENDING,
        )

    def reserve_demo_credits(
        self,
        *,
        device_fingerprint: str,
        request_id: str,
        operation: str,
        mode: str,
        model: str,
        model_tier: str,
        credits: int,
        is_image: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReserveResult:
        """Reserve from a device's demo session; image requests also take one image."""
        if credits < 0:
            raise ValueError("credits must be >= 0")

        images = 1 if is_image else 0
        now = self.clock()
        with storage_errors("reserve demo credits"):
            conn = self._connect()
            try:
                with write_transaction(conn):
                    session = fetch_or_create_demo_session(
                        conn,
                        device_fingerprint,
                        now,
                        self.demo_credits,
                        self.demo_images,
                        self.demo_session_days,
                    )

                    existing = self._existing_status(conn, request_id)
                    if existing in _DUPLICATE_CODES:
                        logger.info("Duplicate reservation for %s (status=%s)", request_id, existing.value)
                        return ReserveResult(
                            success=False,
                            error_code=_DUPLICATE_CODES[existing],
                            credits_remaining=session.credits_remaining,
                            images_remaining=session.images_remaining,
                            demo_session_id=session.id,
                            ledger_status=existing,
                            duplicate=True,
                        )

                    error_code = None
                    if session.images_remaining < images:
                        error_code = INSUFFICIENT_IMAGE_QUOTA
                    elif session.credits_remaining < credits:
                        error_code = INSUFFICIENT_CREDITS
                    if error_code:
                        logger.info("Demo reservation refused for %s: %s", device_fingerprint, error_code)
                        return ReserveResult(
                            success=False,
                            error_code=error_code,
                            credits_remaining=session.credits_remaining,
                            images_remaining=session.images_remaining,
                            demo_session_id=session.id,
                        )

                    credits_remaining = session.credits_remaining - credits
                    images_remaining = session.images_remaining - images
                    conn.execute(
                        """
                        UPDATE demo_sessions
                        SET credits_remaining = ?, images_remaining = ?
                        WHERE id = ?
                        """,
                        (credits_remaining, images_remaining, session.id),
                    )
                    self._write_pending_entry(conn, existing, {
                        "request_id": request_id,
                        "scope_key": f"demo:{device_fingerprint}",
                        "user_id": None,
                        "demo_session_id": session.id,
                        "operation": operation,
                        "mode": mode,
                        "model": model,
                        "model_tier": model_tier,
                        "credits": credits,
                        "images_reserved": images,
                        "metadata": _dump_metadata(metadata),
                        "created_at": to_db_timestamp(now),
                    })
            finally:
                conn.close()

        logger.info(
            "Reserved %d demo credits and %d images for %s", credits, images, request_id
        )
        return ReserveResult(
            success=True,
            error_code=None,
            credits_remaining=credits_remaining,
            images_remaining=images_remaining,
            demo_session_id=session.id,
            ledger_status=LedgerStatus.PENDING,
        )

    def commit(
        self,
        request_id: str,
        *,
        tokens_in: int,
        tokens_out: int,
        grounded_queries: int = 0,
        image_count: int = 0,
        usd_estimate: float = 0.0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Settle a pending entry with the usage actually observed.

        Raises:
            LedgerStateError: If the entry is missing or already settled
            StorageFailure: If the database cannot be reached
        """
        now = self.clock()
        with storage_errors("commit ledger request"):
            conn = self._connect()
            try:
                with write_transaction(conn):
                    row = conn.execute(
                        "SELECT status, metadata FROM credit_ledger WHERE request_id = ?",
                        (request_id,),
                    ).fetchone()
                    if row is None:
                        raise LedgerStateError(f"No ledger entry for request {request_id}")
                    status = LedgerStatus(row["status"])
                    if status.is_terminal:
                        raise LedgerStateError(
                            f"Ledger entry {request_id} is already {status.value}"
                        )

                    merged = json.loads(row["metadata"] or "{}")
                    merged.update(metadata or {})
                    conn.execute(
                        """
                        UPDATE credit_ledger
                        SET status = ?, tokens_in = ?, tokens_out = ?, grounded_queries = ?,
                            image_count = ?, usd_estimate = ?, metadata = ?, settled_at = ?
                        WHERE request_id = ?
                        """,
                        (
                            LedgerStatus.COMMITTED.value,
                            tokens_in,
                            tokens_out,
                            grounded_queries,
                            image_count,
                            usd_estimate,
                            _dump_metadata(merged),
                            to_db_timestamp(now),
                            request_id,
                        ),
                    )
            finally:
                conn.close()

        logger.info("Committed %s (usd_estimate=%.6f)", request_id, usd_estimate)
        return True

    def rollback(self, request_id: str, reason: str) -> bool:
        """Cancel a pending entry and refund its credits and image quota.

        Calling it again, or on a committed entry, changes nothing.

        Returns:
            True if a refund happened, False if there was nothing to undo
        """
        now = self.clock()
        with storage_errors("roll back ledger request"):
            conn = self._connect()
            try:
                with write_transaction(conn):
                    row = conn.execute(
                        """
                        SELECT status, user_id, demo_session_id, credits, images_reserved
                        FROM credit_ledger WHERE request_id = ?
                        """,
                        (request_id,),
                    ).fetchone()
                    if row is None or LedgerStatus(row["status"]).is_terminal:
                        logger.debug("Rollback of %s skipped: nothing pending", request_id)
                        return False

                    if row["user_id"] is not None:
                        conn.execute(
                            """
                            UPDATE credit_wallets SET balance = balance + ?, updated_at = ?
                            WHERE user_id = ?
                            """,
                            (row["credits"], to_db_timestamp(now), row["user_id"]),
                        )
                    if row["demo_session_id"] is not None:
                        conn.execute(
                            """
                            UPDATE demo_sessions
                            SET credits_remaining = credits_remaining + ?,
                                images_remaining = images_remaining + ?
                            WHERE id = ?
                            """,
                            (row["credits"], row["images_reserved"], row["demo_session_id"]),
                        )
                    conn.execute(
                        """
                        UPDATE credit_ledger SET status = ?, reason = ?, settled_at = ?
                        WHERE request_id = ?
                        """,
                        (LedgerStatus.ROLLED_BACK.value, reason, to_db_timestamp(now), request_id),
                    )
            finally:
                conn.close()

        logger.warning("Rolled back %s (%s), refunded %d credits", request_id, reason, row["credits"])
        return True

    def reconcile_stale_reservations(self, max_age: timedelta) -> List[str]:
        """Roll back pending entries older than ``max_age``.

        Reclaims reservations left behind by crashed or hung workers.

        Returns:
            Request ids that were refunded
        """
        cutoff = to_db_timestamp(self.clock() - max_age)
        with storage_errors("list stale reservations"):
            conn = self._connect()
            try:
                rows = conn.execute(
                    """
                    SELECT request_id FROM credit_ledger
                    WHERE status = ? AND created_at < ?
                    ORDER BY created_at
                    """,
                    (LedgerStatus.PENDING.value, cutoff),
                ).fetchall()
            finally:
                conn.close()

        refunded = []
        for row in rows:
            if self.rollback(row["request_id"], RESERVATION_EXPIRED):
                refunded.append(row["request_id"])
        return refunded

    def grant_credits(self, user_id: str, credits: int) -> int:
        """Top up a user's wallet and return the new balance."""
        if credits <= 0:
            raise ValueError("credits must be > 0")
        now = to_db_timestamp(self.clock())
        with storage_errors("grant credits"):
            conn = self._connect()
            try:
                with write_transaction(conn):
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO credit_wallets (user_id, balance, updated_at)
                        VALUES (?, ?, ?)
                        """,
                        (user_id, self.wallet_starting_credits, now),
                    )
                    conn.execute(
                        """
                        UPDATE credit_wallets SET balance = balance + ?, updated_at = ?
                        WHERE user_id = ?
                        """,
                        (credits, now, user_id),
                    )
                    balance = int(conn.execute(
                        "SELECT balance FROM credit_wallets WHERE user_id = ?", (user_id,)
                    ).fetchone()["balance"])
            finally:
                conn.close()
        logger.info("Granted %d credits to %s (balance=%d)", credits, user_id, balance)
        return balance
