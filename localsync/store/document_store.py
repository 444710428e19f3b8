"""Application-facing write path: record table and change log together."""

import logging
from typing import Any, Callable, Iterator

from .change_log import ChangeLog
from .database import LocalDatabase
from .models import Operation, Record, utcnow
from .record_table import RecordTable

logger = logging.getLogger(__name__)

WriteListener = Callable[[str], None]


class DocumentStore:
    """Reads and writes records locally, recording each write for sync.

    Every write updates the record table and appends a pending change log
    entry in the same transaction, before any network activity. Listeners
    registered with ``on_write`` are told about each write afterwards, which
    is how the sync coordinator learns there is work to do.
    """

    def __init__(self, db: LocalDatabase, table: RecordTable, log: ChangeLog):
        self._db = db
        self.table = table
        self.log = log
        self._listeners: list[WriteListener] = []

    def on_write(self, listener: WriteListener) -> None:
        """Register a callable invoked with the record id after each write."""
        self._listeners.append(listener)

    def _notify(self, record_id: str) -> None:
        for listener in self._listeners:
            listener(record_id)

    def put(self, record_id: str, payload: Any) -> Record:
        """Create or update a record.

        Args:
            record_id: Stable identifier of the record.
            payload: JSON-serializable value.

        Returns:
            The record as now stored locally.
        """
        if not record_id:
            raise ValueError("record_id must be a non-empty string")

        with self._db.transaction():
            current = self.table.get(record_id)
            if current is None:
                operation = Operation.CREATE
                base_version = 0
            else:
                operation = Operation.UPDATE
                base_version = current.version

            record = Record(
                id=record_id,
                version=base_version + 1,
                payload=payload,
                updated_at=utcnow(),
                deleted=False,
            )
            self.table.put(record)
            self.log.append(record_id, operation, record, base_version)

        logger.debug(f"{operation.value} {record_id} v{record.version}")
        self._notify(record_id)
        return record

    def delete(self, record_id: str) -> Record | None:
        """Delete a record by writing a tombstone.

        A record created locally and never sent to the remote is removed
        outright, since there is nothing to propagate.

        Returns:
            The tombstone, or None if the record did not exist.
        """
        with self._db.transaction():
            current = self.table.get(record_id)
            if current is None or current.deleted:
                return None

            tombstone = self.table.delete(record_id)
            entry = self.log.append(
                record_id, Operation.DELETE, tombstone, current.version
            )
            if entry is None:
                self.table.purge(record_id)

        logger.debug(f"delete {record_id} v{tombstone.version}")
        self._notify(record_id)
        return tombstone

    def get(self, record_id: str) -> Record | None:
        """Get a live record; tombstones read as absent."""
        record = self.table.get(record_id)
        if record is None or record.deleted:
            return None
        return record

    def scan(self) -> Iterator[Record]:
        """Iterate over live records."""
        return self.table.scan(include_deleted=False)


def open_store(db_path: str) -> DocumentStore:
    """Open the database at ``db_path`` and wire up a DocumentStore.

    Entries left in flight by a previous process are reverted to pending.
    """
    db = LocalDatabase(db_path)
    db.connect()
    log = ChangeLog(db)
    log.recover()
    return DocumentStore(db, RecordTable(db), log)
