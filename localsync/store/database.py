"""SQLite connection shared by the record table and the change log."""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from ..errors import StorageFailure

logger = logging.getLogger(__name__)

SCHEMA = """
-- Current state of every record, tombstones included
CREATE TABLE IF NOT EXISTS records (
    id TEXT PRIMARY KEY,
    version INTEGER NOT NULL,
    payload TEXT,
    updated_at TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0
);

-- Mutations not yet confirmed by the remote
CREATE TABLE IF NOT EXISTS change_log (
    sequence_no INTEGER PRIMARY KEY AUTOINCREMENT,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload_snapshot TEXT NOT NULL,
    base_version INTEGER NOT NULL,
    sync_state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_error TEXT
);

CREATE INDEX IF NOT EXISTS idx_change_log_record ON change_log(record_id, sync_state);
CREATE INDEX IF NOT EXISTS idx_change_log_state ON change_log(sync_state, sequence_no);

-- Changes the remote refused permanently
CREATE TABLE IF NOT EXISTS dead_letters (
    sequence_no INTEGER PRIMARY KEY,
    record_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    payload_snapshot TEXT NOT NULL,
    base_version INTEGER NOT NULL,
    reason TEXT NOT NULL,
    created_at TEXT NOT NULL,
    dead_lettered_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class LocalDatabase:
    """Owns the SQLite connection and the transaction scope.

    Transactions nest: only the outermost ``transaction()`` block commits, so
    a record write and its change log entry land together or not at all.
    """

    def __init__(self, db_path: str | Path):
        """Initialize the database handle.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        self.db_path = Path(db_path).expanduser()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def in_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    def connect(self) -> None:
        """Initialize database connection and schema."""
        if self._conn is not None:
            return

        try:
            if not self.in_memory:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            if not self.in_memory:
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (sqlite3.Error, OSError) as e:
            self._conn = None
            raise StorageFailure(f"Cannot open {self.db_path}: {e}") from e

        logger.info(f"LocalDatabase connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("LocalDatabase connection closed")

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements atomically.

        Raises:
            StorageFailure: if SQLite reports an error. The transaction is
                rolled back.
        """
        with self._lock:
            conn = self._ensure_connected()

            if self._depth:
                self._depth += 1
                try:
                    yield conn
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageFailure(str(e)) from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._depth = 0

    def get_meta(self, key: str) -> str | None:
        """Read a value from the sync metadata table."""
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Write a value to the sync metadata table."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sync_meta (key, value) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
