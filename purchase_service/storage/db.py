from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from ..common.time_util import parse_iso, to_iso_z, utc_now

logger = logging.getLogger(__name__)


SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS purchases (
  purchase_id INTEGER PRIMARY KEY AUTOINCREMENT,
  buyer_id INTEGER NOT NULL,
  offer_id INTEGER NOT NULL,
  purchase_date TEXT NOT NULL,
  amount TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'Pending',
  buyer_details_json TEXT NOT NULL DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_purchases_buyer ON purchases(buyer_id);
CREATE INDEX IF NOT EXISTS idx_purchases_offer ON purchases(offer_id);
CREATE INDEX IF NOT EXISTS idx_purchases_status ON purchases(status);
"""


@dataclass
class PurchaseRow:
    purchase_id: int
    buyer_id: int
    offer_id: int
    purchase_date: datetime
    amount: Decimal
    status: str
    created_at: datetime
    updated_at: datetime
    buyer_details: dict[str, Any] = field(default_factory=dict)


class SqliteStore:
    """Purchase storage: SQLite (single connection + explicit close).

    - TestClient uses threads; the connection is guarded by a lock
    - amounts are stored as TEXT so Decimal values come back unchanged
    - buyer details are a JSON column, read back as a plain dict
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(SCHEMA)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _row_to_purchase(self, row: sqlite3.Row) -> PurchaseRow:
        try:
            details = json.loads(row["buyer_details_json"] or "{}")
        except ValueError:
            logger.warning("Purchase %s has unreadable buyer details", row["purchase_id"])
            details = {}
        if not isinstance(details, dict):
            details = {}
        return PurchaseRow(
            purchase_id=row["purchase_id"],
            buyer_id=row["buyer_id"],
            offer_id=row["offer_id"],
            purchase_date=parse_iso(row["purchase_date"]),
            amount=Decimal(row["amount"]),
            status=row["status"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
            buyer_details=details,
        )

    def get_purchase(self, purchase_id: int) -> Optional[PurchaseRow]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM purchases WHERE purchase_id=?", (purchase_id,)).fetchone()
        if not row:
            return None
        return self._row_to_purchase(row)

    def create_purchase(
        self,
        *,
        buyer_id: int,
        offer_id: int,
        purchase_date: datetime,
        amount: Decimal,
        status: str,
        buyer_details: Optional[dict[str, Any]] = None,
    ) -> PurchaseRow:
        now = to_iso_z(utc_now(), timespec="microseconds")
        details_json = json.dumps(buyer_details or {}, ensure_ascii=False)
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO purchases(buyer_id, offer_id, purchase_date, amount, status, buyer_details_json, created_at, updated_at)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (buyer_id, offer_id, to_iso_z(purchase_date), str(amount), status, details_json, now, now),
            )
            self._conn.commit()
            row = self._conn.execute("SELECT * FROM purchases WHERE purchase_id=?", (cur.lastrowid,)).fetchone()
        return self._row_to_purchase(row)

    def update_purchase(
        self,
        purchase_id: int,
        *,
        buyer_id: int,
        offer_id: int,
        purchase_date: datetime,
        amount: Decimal,
        status: str,
        buyer_details: Optional[dict[str, Any]] = None,
    ) -> Optional[PurchaseRow]:
        """Overwrite a purchase. Returns the reloaded row, or None if it does not exist."""
        now = to_iso_z(utc_now(), timespec="microseconds")
        details_json = json.dumps(buyer_details or {}, ensure_ascii=False)
        with self._lock:
            cur = self._conn.execute(
                """
                UPDATE purchases
                SET buyer_id=?, offer_id=?, purchase_date=?, amount=?, status=?, buyer_details_json=?, updated_at=?
                WHERE purchase_id=?
                """,
                (buyer_id, offer_id, to_iso_z(purchase_date), str(amount), status, details_json, now, purchase_id),
            )
            self._conn.commit()
            if cur.rowcount == 0:
                return None
            row = self._conn.execute("SELECT * FROM purchases WHERE purchase_id=?", (purchase_id,)).fetchone()
        return self._row_to_purchase(row)

    def delete_purchase(self, purchase_id: int) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM purchases WHERE purchase_id=?", (purchase_id,))
            self._conn.commit()
        return cur.rowcount > 0

    def list_purchases(
        self,
        *,
        buyer_id: Optional[int] = None,
        offer_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[PurchaseRow]:
        """List purchases, newest first. Status matching ignores case."""
        clauses: list[str] = []
        params: list[Any] = []
        if buyer_id is not None:
            clauses.append("buyer_id=?")
            params.append(buyer_id)
        if offer_id is not None:
            clauses.append("offer_id=?")
            params.append(offer_id)
        if status:
            clauses.append("status=? COLLATE NOCASE")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        sql = f"SELECT * FROM purchases {where} ORDER BY created_at DESC, purchase_id DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), int(offset)])
        with self._lock:
            rows = self._conn.execute(sql, tuple(params)).fetchall()
        return [self._row_to_purchase(r) for r in rows]
