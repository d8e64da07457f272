"""
Idempotency cache.

Maps (endpoint, scope key, client idempotency key) to the response produced
by the first successful attempt.
"""

import hashlib
import json
import re
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .db import get_connection, storage_errors, to_db_timestamp, utc_now, write_transaction
from .repository import DEFAULT_DB_PATH

_SCOPE_UNSAFE = re.compile(r"[^a-zA-Z0-9:_-]")
_KEY_UNSAFE = re.compile(r"[^a-zA-Z0-9._:-]")


def build_request_id(endpoint: str, scope_key: str, idempotency_key: str) -> str:
    """Derive the ledger request id for one logical request.

    The readable prefix is sanitized and truncated; the trailing SHA-256 digest
    of the raw composite key keeps ids distinct whenever the keys differ.
    """
    endpoint_part = endpoint[:32]
    scope_part = _SCOPE_UNSAFE.sub("", scope_key)[:120]
    key_part = _KEY_UNSAFE.sub("", idempotency_key)[:120]
    digest = hashlib.sha256("\0".join((endpoint, scope_key, idempotency_key)).encode("utf-8")).hexdigest()
    return f"{endpoint_part}:{scope_part}:{key_part}:{digest}"


class IdempotencyCache:
    """Response cache keyed by the composite (endpoint, scope, key).

    Callers save only after the ledger commit succeeded; a rolled back
    attempt leaves no record, so the key can be retried.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        *,
        busy_timeout: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self.clock = clock

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, timeout=self.busy_timeout)

    def get(self, endpoint: str, scope_key: str, idempotency_key: str) -> Optional[Dict[str, Any]]:
        with storage_errors("query idempotency cache"):
            conn = self._connect()
            try:
                row = conn.execute(
                    """
                    SELECT response FROM idempotency_requests
                    WHERE endpoint = ? AND scope_key = ? AND idempotency_key = ?
                    """,
                    (endpoint, scope_key, idempotency_key),
                ).fetchone()
            finally:
                conn.close()
        if row is None:
            return None
        return json.loads(row["response"])

    def save(
        self,
        endpoint: str,
        scope_key: str,
        idempotency_key: str,
        response: Dict[str, Any],
    ) -> None:
        """Store (or overwrite) the response for a composite key.

        Raises:
            StorageFailure: If the cache cannot be written
        """
        payload = json.dumps(response, sort_keys=True)
        with storage_errors("save idempotency cache"):
            conn = self._connect()
            try:
                with write_transaction(conn):
                    conn.execute(
                        """
                        INSERT INTO idempotency_requests
                        (endpoint, scope_key, idempotency_key, response, created_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT (endpoint, scope_key, idempotency_key)
                        DO UPDATE SET response = excluded.response
                        """,
                        (endpoint, scope_key, idempotency_key, payload, to_db_timestamp(self.clock())),
                    )
            finally:
                conn.close()
