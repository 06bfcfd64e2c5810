"""
Database setup and the registration store.
"""

import logging
import queue
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import List, Optional

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """The store is unreachable or a query failed."""
    pass


class StoreConflict(StoreError):
    """A write violated a uniqueness or integrity constraint."""
    pass


class Status(IntEnum):
    """Registration status, stored as an integer."""
    PENDING = 0
    APPROVED = 1
    REJECTED = 2

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass
class Registration:
    """One subject's registration."""
    subject_id: str
    display_name: str
    status: Status = Status.PENDING
    registrant_comment: str = ""
    reviewer_comment: str = ""
    special: bool = False

    def to_dict(self) -> dict:
        return {
            "subject_id": self.subject_id,
            "display_name": self.display_name,
            "status": self.status.label,
            "registrant_comment": self.registrant_comment,
            "reviewer_comment": self.reviewer_comment,
            "special": self.special,
        }


@dataclass
class QualificationEntrant:
    """A seeded entrant in the qualification list."""
    seed: int
    subject_id: str
    display_name: str
    latest_rating: int
    latest_rating_url: str
    highest_rating: int
    highest_rating_url: str
    seeding_rating: float


SCHEMA = """
    CREATE TABLE IF NOT EXISTS registrations (
        subject_id TEXT PRIMARY KEY,
        display_name TEXT NOT NULL,
        status INTEGER NOT NULL DEFAULT 0 CHECK (status IN (0, 1, 2)),
        registrant_comment TEXT NOT NULL DEFAULT '',
        reviewer_comment TEXT NOT NULL DEFAULT '',
        special INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        reviewed_at TEXT
    );

    CREATE TABLE IF NOT EXISTS qualification (
        subject_id TEXT PRIMARY KEY,
        display_name TEXT NOT NULL,
        latest_rating INTEGER NOT NULL,
        latest_rating_url TEXT NOT NULL DEFAULT '',
        highest_rating INTEGER NOT NULL,
        highest_rating_url TEXT NOT NULL DEFAULT ''
    );

    CREATE TABLE IF NOT EXISTS audit_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        actor_id TEXT,
        action TEXT NOT NULL,
        target_id TEXT,
        details TEXT,
        ip_address TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_registrations_status ON registrations(status);
    CREATE INDEX IF NOT EXISTS idx_audit_log_timestamp ON audit_log(timestamp);
    CREATE INDEX IF NOT EXISTS idx_audit_log_action ON audit_log(action);
"""

TABLES = ("registrations", "qualification", "audit_log")


class ConnectionPool:
    """
    Bounded pool of sqlite connections.

    At most ``size`` connections are checked out at once. A caller that finds
    the pool exhausted waits up to ``timeout`` seconds and then gets a
    StoreError.
    """

    def __init__(self, path: str, size: int = 5, timeout: float = 10.0):
        self.path = path
        self.size = max(1, size)
        self.timeout = timeout
        self._slots = threading.BoundedSemaphore(self.size)
        self._idle: "queue.LifoQueue[sqlite3.Connection]" = queue.LifoQueue(maxsize=self.size)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self):
        """Check out a connection; commit on success, roll back on failure."""
        if not self._slots.acquire(timeout=self.timeout):
            raise StoreError("Timed out waiting for a database connection")
        try:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                try:
                    conn = self._connect()
                except sqlite3.Error as e:
                    raise StoreError(f"Cannot open database: {e}") from e

            try:
                yield conn
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise StoreConflict(str(e)) from e
            except sqlite3.Error as e:
                conn.rollback()
                raise StoreError(str(e)) from e
            except Exception:
                conn.rollback()
                raise
            finally:
                self._idle.put_nowait(conn)
        finally:
            self._slots.release()

    def close(self) -> None:
        """Close idle connections."""
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class AuditEntry:
    """One audit row, written in the same transaction as the change it records."""
    action: str
    actor_id: Optional[str] = None
    target_id: Optional[str] = None
    details: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: str = field(default_factory=_now)


def write_audit(conn: sqlite3.Connection, entry: AuditEntry) -> None:
    conn.execute("""
        INSERT INTO audit_log (timestamp, actor_id, action, target_id, details, ip_address)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (entry.timestamp, entry.actor_id, entry.action, entry.target_id,
          entry.details, entry.ip_address))


def _row_to_registration(row: sqlite3.Row) -> Registration:
    return Registration(
        subject_id=row["subject_id"],
        display_name=row["display_name"],
        status=Status(row["status"]),
        registrant_comment=row["registrant_comment"],
        reviewer_comment=row["reviewer_comment"],
        special=bool(row["special"]),
    )


class RegistrationStore:
    """Durable keyed storage for registrations, qualification and audit rows."""

    def __init__(self, pool: ConnectionPool):
        self.pool = pool

    @classmethod
    def from_config(cls, cfg) -> "RegistrationStore":
        return cls(ConnectionPool(
            cfg.DATABASE_PATH,
            size=cfg.DB_POOL_SIZE,
            timeout=cfg.DB_POOL_TIMEOUT_SECONDS,
        ))

    def init_db(self) -> None:
        """Initialize the database schema."""
        with self.pool.connection() as conn:
            conn.executescript(SCHEMA)

    def reset_db(self) -> None:
        """Drop and recreate every table (for testing)."""
        with self.pool.connection() as conn:
            for table in TABLES:
                conn.execute(f"DROP TABLE IF EXISTS {table}")
        self.init_db()

    # Registrations

    def insert_registration(
        self, registration: Registration, audit: Optional[AuditEntry] = None
    ) -> bool:
        """
        Insert a registration, together with its audit row if one is given.

        Returns:
            True if inserted, False if the subject already has one
        """
        try:
            with self.pool.connection() as conn:
                conn.execute("""
                    INSERT INTO registrations (subject_id, display_name, status,
                                               registrant_comment, reviewer_comment,
                                               special, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    registration.subject_id,
                    registration.display_name,
                    int(registration.status),
                    registration.registrant_comment,
                    registration.reviewer_comment,
                    int(registration.special),
                    _now(),
                ))
                if audit is not None:
                    write_audit(conn, audit)
        except StoreConflict:
            logger.info(f"Registration for {registration.subject_id} already exists")
            return False
        return True

    def find_registration(self, subject_id: str) -> Optional[Registration]:
        with self.pool.connection() as conn:
            row = conn.execute("""
                SELECT subject_id, display_name, status, registrant_comment,
                       reviewer_comment, special
                FROM registrations WHERE subject_id = ?
            """, (subject_id,)).fetchone()
        return _row_to_registration(row) if row else None

    def all_registrations(self) -> List[Registration]:
        """All registrations, pending first, then by name."""
        with self.pool.connection() as conn:
            rows = conn.execute("""
                SELECT subject_id, display_name, status, registrant_comment,
                       reviewer_comment, special
                FROM registrations
                ORDER BY status, display_name COLLATE NOCASE
            """).fetchall()
        return [_row_to_registration(row) for row in rows]

    def set_status(
        self,
        subject_id: str,
        reviewer_comment: str,
        status: Status,
        audit: Optional[AuditEntry] = None,
    ) -> int:
        """Update status and reviewer comment. Returns the number of rows changed."""
        with self.pool.connection() as conn:
            cursor = conn.execute("""
                UPDATE registrations
                SET status = ?, reviewer_comment = ?, reviewed_at = ?
                WHERE subject_id = ?
            """, (int(status), reviewer_comment, _now(), subject_id))
            if audit is not None:
                write_audit(conn, audit)
            return cursor.rowcount

    def approve_registration(
        self, subject_id: str, reviewer_comment: str, audit: Optional[AuditEntry] = None
    ) -> int:
        return self.set_status(subject_id, reviewer_comment, Status.APPROVED, audit)

    def reject_registration(
        self, subject_id: str, reviewer_comment: str, audit: Optional[AuditEntry] = None
    ) -> int:
        return self.set_status(subject_id, reviewer_comment, Status.REJECTED, audit)

    def withdraw_registration(self, subject_id: str, audit: Optional[AuditEntry] = None) -> int:
        with self.pool.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM registrations WHERE subject_id = ?", (subject_id,)
            )
            if audit is not None:
                write_audit(conn, audit)
            return cursor.rowcount

    # Qualification

    def add_qualification_entrant(
        self,
        subject_id: str,
        display_name: str,
        latest_rating: int,
        latest_rating_url: str,
        highest_rating: int,
        highest_rating_url: str,
    ) -> None:
        """Insert or replace a qualification entrant."""
        with self.pool.connection() as conn:
            conn.execute("""
                INSERT INTO qualification (subject_id, display_name, latest_rating,
                                           latest_rating_url, highest_rating, highest_rating_url)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(subject_id) DO UPDATE SET
                    display_name = excluded.display_name,
                    latest_rating = excluded.latest_rating,
                    latest_rating_url = excluded.latest_rating_url,
                    highest_rating = excluded.highest_rating,
                    highest_rating_url = excluded.highest_rating_url
            """, (subject_id, display_name, latest_rating, latest_rating_url,
                  highest_rating, highest_rating_url))

    def qualification_entrants(self) -> List[QualificationEntrant]:
        """Entrants seeded by the sum of latest and highest rating, best first."""
        with self.pool.connection() as conn:
            rows = conn.execute("""
                SELECT subject_id, display_name, latest_rating, latest_rating_url,
                       highest_rating, highest_rating_url
                FROM qualification
                ORDER BY (latest_rating + highest_rating) DESC
            """).fetchall()

        entrants = []
        for i, row in enumerate(rows):
            latest = row["latest_rating"]
            highest = row["highest_rating"]
            entrants.append(QualificationEntrant(
                seed=i + 1,
                subject_id=row["subject_id"],
                display_name=row["display_name"],
                latest_rating=latest,
                latest_rating_url=row["latest_rating_url"],
                highest_rating=highest,
                highest_rating_url=row["highest_rating_url"],
                seeding_rating=(latest + highest) / 2.0,
            ))
        return entrants
