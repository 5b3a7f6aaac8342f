"""
SQLite persistence for certificate history and dispatch claims.
"""

import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, List, Optional

from cert_alarm.logger import get_logger
from cert_alarm.models import CertificateRecord, CheckStatus, DispatchClaim, ProbeMethod
from cert_alarm.normalizer import utc_now

MEMORY_DATABASE = ":memory:"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS cert_checks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        domain TEXT NOT NULL,
        status TEXT NOT NULL,
        issuer TEXT,
        subject TEXT,
        valid_from TEXT,
        valid_to TEXT,
        days_until_expiry INTEGER,
        fingerprint TEXT,
        method TEXT,
        error_message TEXT,
        message TEXT,
        observed_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cert_checks_domain ON cert_checks (domain, id)",
    """
    CREATE TABLE IF NOT EXISTS dispatch_claims (
        window_key TEXT PRIMARY KEY,
        claimed_at TEXT NOT NULL,
        sent_at TEXT
    )
    """,
)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class CertificateStore:
    """
    Append-only certificate history plus the dispatch claim table.

    One connection is shared across threads and guarded by a lock. Claims
    rely on the primary key of ``dispatch_claims`` for atomicity, so
    concurrent claimers in separate processes are safe as well.
    """

    def __init__(self, database_path: str):
        self.database_path = database_path
        self.logger = get_logger("store")
        self._lock = threading.Lock()
        self._conn = self._connect(database_path)
        self._ensure_schema()
        self.logger.info(f"Certificate store opened - Path: {database_path}")

    @staticmethod
    def _connect(path: str) -> sqlite3.Connection:
        if path != MEMORY_DATABASE:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        if path != MEMORY_DATABASE:
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    def _ensure_schema(self) -> None:
        with self._lock:
            for statement in _SCHEMA:
                self._conn.execute(statement)
            # Databases created before the probe note was recorded
            columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(cert_checks)")}
            if "message" not in columns:
                self._conn.execute("ALTER TABLE cert_checks ADD COLUMN message TEXT")
                self.logger.info("Added message column to cert_checks")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _execute(self, sql: str, params: Any = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _fetchall(self, sql: str, params: Any = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    # Certificate history

    def save_record(self, record: CertificateRecord) -> None:
        """Append one resolution attempt to the history."""
        self._execute(
            """
            INSERT INTO cert_checks (
                domain, status, issuer, subject, valid_from, valid_to,
                days_until_expiry, fingerprint, method, error_message, message, observed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.domain,
                record.status.value,
                record.issuer,
                record.subject,
                _to_text(record.valid_from),
                _to_text(record.valid_to),
                record.days_until_expiry,
                record.fingerprint,
                record.method.value if record.method else None,
                record.error_message,
                record.message,
                _to_text(record.observed_at),
            ),
        )

    def latest_records(self) -> List[CertificateRecord]:
        """Most recent record for every domain ever checked."""
        rows = self._fetchall(
            """
            SELECT * FROM cert_checks
            WHERE id IN (SELECT MAX(id) FROM cert_checks GROUP BY domain)
            ORDER BY domain
            """
        )
        return [self._row_to_record(row) for row in rows]

    def history(self, domain: str, limit: int = 50) -> List[CertificateRecord]:
        """Newest-first history for one domain."""
        rows = self._fetchall(
            "SELECT * FROM cert_checks WHERE domain = ? ORDER BY id DESC LIMIT ?",
            (domain, limit),
        )
        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CertificateRecord:
        return CertificateRecord(
            domain=row["domain"],
            status=CheckStatus(row["status"]),
            observed_at=_from_text(row["observed_at"]),
            issuer=row["issuer"],
            subject=row["subject"],
            valid_from=_from_text(row["valid_from"]),
            valid_to=_from_text(row["valid_to"]),
            days_until_expiry=row["days_until_expiry"],
            fingerprint=row["fingerprint"],
            method=ProbeMethod(row["method"]) if row["method"] else None,
            error_message=row["error_message"],
            message=row["message"],
        )

    # Dispatch claims

    def try_claim(self, window_key: str, now: Optional[datetime] = None) -> bool:
        """Insert the claim row if absent. True iff this caller created it."""
        cursor = self._execute(
            "INSERT OR IGNORE INTO dispatch_claims (window_key, claimed_at) VALUES (?, ?)",
            (window_key, (now or utc_now()).isoformat()),
        )
        return cursor.rowcount == 1

    def mark_sent(self, window_key: str, at: Optional[datetime] = None) -> None:
        self._execute(
            "UPDATE dispatch_claims SET sent_at = ? WHERE window_key = ?",
            ((at or utc_now()).isoformat(), window_key),
        )

    def release(self, window_key: str) -> bool:
        cursor = self._execute("DELETE FROM dispatch_claims WHERE window_key = ?", (window_key,))
        return cursor.rowcount == 1

    def get_claim(self, window_key: str) -> Optional[DispatchClaim]:
        rows = self._fetchall(
            "SELECT * FROM dispatch_claims WHERE window_key = ?", (window_key,)
        )
        if not rows:
            return None
        return DispatchClaim(
            window_key=rows[0]["window_key"],
            claimed_at=_from_text(rows[0]["claimed_at"]),
            sent_at=_from_text(rows[0]["sent_at"]),
        )

    def last_sent_claim(self, prefix: str) -> Optional[DispatchClaim]:
        """Most recently confirmed claim whose window key starts with ``prefix``."""
        rows = self._fetchall(
            """
            SELECT * FROM dispatch_claims
            WHERE window_key LIKE ? AND sent_at IS NOT NULL
            ORDER BY sent_at DESC LIMIT 1
            """,
            (f"{prefix}%",),
        )
        if not rows:
            return None
        return DispatchClaim(
            window_key=rows[0]["window_key"],
            claimed_at=_from_text(rows[0]["claimed_at"]),
            sent_at=_from_text(rows[0]["sent_at"]),
        )
