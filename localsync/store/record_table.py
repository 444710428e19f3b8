"""Durable local table of application records."""

import json
import logging
import sqlite3
from typing import Iterator

from .database import LocalDatabase
from .models import Record, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


def _row_to_record(row: sqlite3.Row) -> Record:
    return Record(
        id=row["id"],
        version=row["version"],
        payload=json.loads(row["payload"]) if row["payload"] is not None else None,
        updated_at=parse_timestamp(row["updated_at"]),
        deleted=bool(row["deleted"]),
    )


class RecordTable:
    """Key-indexed table holding exactly one current Record per id.

    Deletes write tombstones; a tombstone is only physically removed by
    ``purge()`` once the remote has confirmed the deletion.
    """

    def __init__(self, db: LocalDatabase):
        self._db = db

    @property
    def db(self) -> LocalDatabase:
        return self._db

    def get(self, record_id: str) -> Record | None:
        """Get the current record, tombstones included.

        Returns:
            The Record, or None if no row exists for ``record_id``.
        """
        with self._db.transaction() as conn:
            row = conn.execute(
                """
                SELECT id, version, payload, updated_at, deleted
                FROM records WHERE id = ?
                """,
                (record_id,),
            ).fetchone()
        return _row_to_record(row) if row else None

    def put(self, record: Record) -> None:
        """Insert or overwrite the record with ``record.id``."""
        with self._db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO records (id, version, payload, updated_at, deleted)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    version = excluded.version,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at,
                    deleted = excluded.deleted
                """,
                (
                    record.id,
                    record.version,
                    json.dumps(record.payload),
                    record.updated_at.isoformat(),
                    int(record.deleted),
                ),
            )
        logger.debug(f"Put record {record.id} v{record.version}")

    def delete(self, record_id: str) -> Record | None:
        """Replace the record with a tombstone.

        Returns:
            The tombstone written, or None if the record does not exist.
        """
        with self._db.transaction():
            current = self.get(record_id)
            if current is None:
                return None
            if current.deleted:
                return current

            tombstone = Record(
                id=record_id,
                version=current.version + 1,
                payload=current.payload,
                updated_at=utcnow(),
                deleted=True,
            )
            self.put(tombstone)
        return tombstone

    def purge(self, record_id: str) -> bool:
        """Physically remove a row. Used once a deletion is confirmed.

        Returns:
            True if a row was removed.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
        removed = cursor.rowcount > 0
        if removed:
            logger.debug(f"Purged record {record_id}")
        return removed

    def scan(self, include_deleted: bool = False) -> Iterator[Record]:
        """Iterate over records ordered by id.

        Each call runs a fresh query, so the sequence can be restarted.
        Rows are fetched in pages to keep the iteration lazy without
        holding the connection lock between pages.
        """
        last_id = ""
        while True:
            with self._db.transaction() as conn:
                rows = conn.execute(
                    """
                    SELECT id, version, payload, updated_at, deleted
                    FROM records
                    WHERE id > ? AND (? OR deleted = 0)
                    ORDER BY id ASC
                    LIMIT 100
                    """,
                    (last_id, int(include_deleted)),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield _row_to_record(row)
            last_id = rows[-1]["id"]

    def count(self, include_deleted: bool = False) -> int:
        """Number of records held locally."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM records WHERE (? OR deleted = 0)",
                (int(include_deleted),),
            ).fetchone()
        return row[0]
