"""Durable, ordered log of mutations awaiting confirmation by the remote.

The log tracks the latest intended state of each record rather than its full
history: a new pending write for a record replaces the older pending one.
Entries already handed to the sync coordinator (in flight) are never
coalesced away.
"""

import json
import logging
import sqlite3
from typing import Any

from .database import LocalDatabase
from .models import (
    ChangeLogEntry,
    DeadLetter,
    Operation,
    Record,
    SyncState,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

_ENTRY_COLUMNS = """
    sequence_no, record_id, operation, payload_snapshot, base_version,
    sync_state, attempts, created_at, last_error
"""


def coalesce_operations(
    earlier: Operation, later: Operation, allow_cancel: bool = True
) -> Operation | None:
    """Combine two writes to the same record into one.

    Args:
        earlier: Operation of the entry being replaced.
        later: Operation of the newer write.
        allow_cancel: Whether CREATE followed by DELETE may cancel out.
            Only safe when the CREATE was never sent to the remote.

    Returns:
        The combined operation, or None if the writes cancel out.
    """
    if earlier is Operation.CREATE:
        if later is Operation.UPDATE:
            return Operation.CREATE
        if later is Operation.DELETE and allow_cancel:
            return None
    if earlier is Operation.DELETE and later is not Operation.DELETE:
        return Operation.UPDATE
    return later


def _row_to_entry(row: sqlite3.Row) -> ChangeLogEntry:
    return ChangeLogEntry(
        sequence_no=row["sequence_no"],
        record_id=row["record_id"],
        operation=Operation(row["operation"]),
        payload_snapshot=Record.from_dict(json.loads(row["payload_snapshot"])),
        base_version=row["base_version"],
        sync_state=SyncState(row["sync_state"]),
        attempts=row["attempts"],
        created_at=parse_timestamp(row["created_at"]),
        last_error=row["last_error"],
    )


class ChangeLog:
    """Append-only change log with single-pending-per-record coalescing."""

    def __init__(self, db: LocalDatabase):
        self._db = db

    @property
    def db(self) -> LocalDatabase:
        return self._db

    def _find(
        self, conn: sqlite3.Connection, record_id: str, state: SyncState
    ) -> list[ChangeLogEntry]:
        rows = conn.execute(
            f"""
            SELECT {_ENTRY_COLUMNS} FROM change_log
            WHERE record_id = ? AND sync_state = ?
            ORDER BY sequence_no ASC
            """,
            (record_id, state.value),
        ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def append(
        self,
        record_id: str,
        operation: Operation,
        snapshot: Record,
        base_version: int,
    ) -> ChangeLogEntry | None:
        """Append a pending entry, replacing any pending entry for the record.

        Args:
            record_id: Record the mutation applies to.
            operation: Kind of mutation.
            snapshot: Record state at the time of the write.
            base_version: Version of the record the write was based on.

        Returns:
            The new entry, or None if it cancelled out an unsent CREATE.
        """
        with self._db.transaction() as conn:
            pending = self._find(conn, record_id, SyncState.PENDING)
            if pending:
                earlier = pending[-1]
                in_flight = self._find(conn, record_id, SyncState.IN_FLIGHT)
                combined = coalesce_operations(
                    earlier.operation, operation, allow_cancel=not in_flight
                )
                conn.execute(
                    "DELETE FROM change_log WHERE sequence_no = ?",
                    (earlier.sequence_no,),
                )
                base_version = earlier.base_version
                logger.debug(
                    f"Coalesced entry {earlier.sequence_no} for {record_id} "
                    f"({earlier.operation.value} + {operation.value})"
                )
                if combined is None:
                    return None
                operation = combined

            created_at = utcnow()
            cursor = conn.execute(
                """
                INSERT INTO change_log (
                    record_id, operation, payload_snapshot, base_version,
                    sync_state, attempts, created_at
                ) VALUES (?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    record_id,
                    operation.value,
                    json.dumps(snapshot.to_dict()),
                    base_version,
                    SyncState.PENDING.value,
                    created_at.isoformat(),
                ),
            )

        entry = ChangeLogEntry(
            sequence_no=cursor.lastrowid,
            record_id=record_id,
            operation=operation,
            payload_snapshot=snapshot,
            base_version=base_version,
            created_at=created_at,
        )
        logger.debug(
            f"Appended entry {entry.sequence_no} ({operation.value} {record_id})"
        )
        return entry

    def peek_batch(self, max_size: int) -> list[ChangeLogEntry]:
        """Take the oldest pending entries and mark them in flight.

        Records that already have an entry in flight are skipped, so no
        record is ever part of two batches at once.

        Args:
            max_size: Maximum entries to return.

        Returns:
            Entries now in IN_FLIGHT state, oldest first.
        """
        if max_size <= 0:
            return []

        with self._db.transaction() as conn:
            rows = conn.execute(
                f"""
                SELECT {_ENTRY_COLUMNS} FROM change_log
                WHERE sync_state = ?
                  AND record_id NOT IN (
                      SELECT record_id FROM change_log WHERE sync_state = ?
                  )
                ORDER BY sequence_no ASC
                LIMIT ?
                """,
                (SyncState.PENDING.value, SyncState.IN_FLIGHT.value, max_size),
            ).fetchall()

            entries = [_row_to_entry(r) for r in rows]
            if not entries:
                return []

            placeholders = ",".join("?" * len(entries))
            conn.execute(
                f"""
                UPDATE change_log SET sync_state = ?
                WHERE sequence_no IN ({placeholders})
                """,
                (SyncState.IN_FLIGHT.value, *(e.sequence_no for e in entries)),
            )

        for entry in entries:
            entry.sync_state = SyncState.IN_FLIGHT
        logger.debug(f"Took batch of {len(entries)} entries")
        return entries

    def mark_synced(self, sequence_no: int) -> bool:
        """Remove a confirmed entry from the log.

        Returns:
            True if the entry existed.
        """
        with self._db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM change_log WHERE sequence_no = ?", (sequence_no,)
            )
        return cursor.rowcount > 0

    def mark_failed(self, sequence_no: int, error: str | None = None) -> bool:
        """Return an in-flight entry to the pending state for a later retry.

        If a newer pending entry exists for the same record, the failed entry
        is folded into it instead, keeping one pending entry per record. The
        newer entry inherits the failed entry's base version.

        Returns:
            True if the entry was in flight.
        """
        with self._db.transaction() as conn:
            entry = self._get(conn, sequence_no)
            if entry is None or entry.sync_state is not SyncState.IN_FLIGHT:
                logger.warning(f"mark_failed: entry {sequence_no} is not in flight")
                return False

            newer = [
                e
                for e in self._find(conn, entry.record_id, SyncState.PENDING)
                if e.sequence_no > entry.sequence_no
            ]
            if newer:
                target = newer[-1]
                # The failed push may have reached the server, so never cancel
                combined = coalesce_operations(
                    entry.operation, target.operation, allow_cancel=False
                )
                conn.execute(
                    """
                    UPDATE change_log
                    SET operation = ?, base_version = ?, attempts = ?, last_error = ?
                    WHERE sequence_no = ?
                    """,
                    (
                        combined.value,
                        entry.base_version,
                        entry.attempts + 1,
                        error,
                        target.sequence_no,
                    ),
                )
                conn.execute(
                    "DELETE FROM change_log WHERE sequence_no = ?", (sequence_no,)
                )
                logger.debug(
                    f"Folded failed entry {sequence_no} into {target.sequence_no}"
                )
                return True

            conn.execute(
                """
                UPDATE change_log
                SET sync_state = ?, attempts = attempts + 1, last_error = ?
                WHERE sequence_no = ?
                """,
                (SyncState.PENDING.value, error, sequence_no),
            )
        return True

    def rebase(self, sequence_no: int, snapshot: Record, base_version: int) -> bool:
        """Return an in-flight entry to pending with a new snapshot and base.

        Used when a conflict was resolved in favour of local or merged data,
        which must be pushed again on top of the server's version. If a newer
        pending entry exists for the record, it supersedes this one and the
        entry is simply removed.

        Returns:
            True if the entry was rebased, False if it was superseded.
        """
        with self._db.transaction() as conn:
            entry = self._get(conn, sequence_no)
            if entry is None or entry.sync_state is not SyncState.IN_FLIGHT:
                logger.warning(f"rebase: entry {sequence_no} is not in flight")
                return False

            if self.has_newer_pending(entry.record_id, sequence_no):
                conn.execute(
                    "DELETE FROM change_log WHERE sequence_no = ?", (sequence_no,)
                )
                return False

            # The server knows the record now
            operation = entry.operation
            if operation is Operation.CREATE:
                operation = Operation.UPDATE

            conn.execute(
                """
                UPDATE change_log
                SET sync_state = ?, operation = ?, payload_snapshot = ?,
                    base_version = ?, attempts = attempts + 1
                WHERE sequence_no = ?
                """,
                (
                    SyncState.PENDING.value,
                    operation.value,
                    json.dumps(snapshot.to_dict()),
                    base_version,
                    sequence_no,
                ),
            )
        return True

    def dead_letter(self, sequence_no: int, reason: str) -> bool:
        """Move an entry out of the active log into the dead-letter table.

        Returns:
            True if the entry existed.
        """
        with self._db.transaction() as conn:
            entry = self._get(conn, sequence_no)
            if entry is None:
                return False

            conn.execute(
                """
                INSERT OR REPLACE INTO dead_letters (
                    sequence_no, record_id, operation, payload_snapshot,
                    base_version, reason, created_at, dead_lettered_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.sequence_no,
                    entry.record_id,
                    entry.operation.value,
                    json.dumps(entry.payload_snapshot.to_dict()),
                    entry.base_version,
                    reason,
                    entry.created_at.isoformat(),
                    utcnow().isoformat(),
                ),
            )
            conn.execute(
                "DELETE FROM change_log WHERE sequence_no = ?", (sequence_no,)
            )

        logger.warning(
            f"Entry {sequence_no} for {entry.record_id} dead-lettered: {reason}"
        )
        return True

    def list_dead_letters(self, limit: int = 100) -> list[DeadLetter]:
        """Get dead-lettered changes, oldest first."""
        with self._db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT sequence_no, record_id, operation, payload_snapshot,
                       base_version, reason, created_at, dead_lettered_at
                FROM dead_letters
                ORDER BY sequence_no ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [
            DeadLetter(
                sequence_no=row["sequence_no"],
                record_id=row["record_id"],
                operation=Operation(row["operation"]),
                payload_snapshot=Record.from_dict(json.loads(row["payload_snapshot"])),
                base_version=row["base_version"],
                reason=row["reason"],
                created_at=parse_timestamp(row["created_at"]),
                dead_lettered_at=parse_timestamp(row["dead_lettered_at"]),
            )
            for row in rows
        ]

    def requeue_dead_letter(self, sequence_no: int) -> ChangeLogEntry | None:
        """Put a dead-lettered change back into the log as a pending entry.

        The change gets a new sequence number. A change is only requeued
        while the record has no other unconfirmed entry; a later write to the
        record already carries newer state and must not be replaced by the
        rejected one.

        Returns:
            The new entry, or None if no such dead letter exists.

        Raises:
            ValueError: if the record has a newer unconfirmed write.
        """
        with self._db.transaction() as conn:
            letters = [
                d for d in self.list_dead_letters(limit=-1)
                if d.sequence_no == sequence_no
            ]
            if not letters:
                return None
            letter = letters[0]
            if self.has_pending_work(letter.record_id):
                raise ValueError(
                    f"Record {letter.record_id} has newer unsynced changes, "
                    f"dead letter {sequence_no} is stale"
                )

            conn.execute(
                "DELETE FROM dead_letters WHERE sequence_no = ?", (sequence_no,)
            )
            entry = self.append(
                letter.record_id,
                letter.operation,
                letter.payload_snapshot,
                letter.base_version,
            )

        logger.info(f"Requeued dead letter {sequence_no} for {letter.record_id}")
        return entry

    def has_newer_pending(self, record_id: str, sequence_no: int) -> bool:
        """Check whether a pending write for the record follows ``sequence_no``."""
        with self._db.transaction() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM change_log
                WHERE record_id = ? AND sync_state = ? AND sequence_no > ?
                LIMIT 1
                """,
                (record_id, SyncState.PENDING.value, sequence_no),
            ).fetchone()
        return row is not None

    def has_pending_work(self, record_id: str) -> bool:
        """Check whether any unconfirmed entry exists for the record."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT 1 FROM change_log WHERE record_id = ? LIMIT 1",
                (record_id,),
            ).fetchone()
        return row is not None

    def _get(
        self, conn: sqlite3.Connection, sequence_no: int
    ) -> ChangeLogEntry | None:
        row = conn.execute(
            f"SELECT {_ENTRY_COLUMNS} FROM change_log WHERE sequence_no = ?",
            (sequence_no,),
        ).fetchone()
        return _row_to_entry(row) if row else None

    def get(self, sequence_no: int) -> ChangeLogEntry | None:
        """Get an active entry by sequence number."""
        with self._db.transaction() as conn:
            return self._get(conn, sequence_no)

    def entries(self, state: SyncState | None = None) -> list[ChangeLogEntry]:
        """Get active entries in sequence order, optionally filtered by state."""
        with self._db.transaction() as conn:
            if state is None:
                rows = conn.execute(
                    f"SELECT {_ENTRY_COLUMNS} FROM change_log ORDER BY sequence_no"
                ).fetchall()
            else:
                rows = conn.execute(
                    f"""
                    SELECT {_ENTRY_COLUMNS} FROM change_log
                    WHERE sync_state = ? ORDER BY sequence_no
                    """,
                    (state.value,),
                ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def is_empty(self) -> bool:
        """True when no change awaits confirmation."""
        with self._db.transaction() as conn:
            row = conn.execute("SELECT 1 FROM change_log LIMIT 1").fetchone()
        return row is None

    def pending_count(self) -> int:
        """Number of entries waiting for the next sync run."""
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM change_log WHERE sync_state = ?",
                (SyncState.PENDING.value,),
            ).fetchone()
        return row[0]

    def recover(self) -> int:
        """Revert entries left in flight by an interrupted run.

        Call once at startup, before the first sync run.

        Returns:
            Number of entries reverted.
        """
        stuck = self.entries(SyncState.IN_FLIGHT)
        for entry in stuck:
            self.mark_failed(entry.sequence_no, "interrupted")
        if stuck:
            logger.info(f"Recovered {len(stuck)} in-flight entries")
        return len(stuck)

    def get_stats(self) -> dict[str, Any]:
        """Get log statistics.

        Returns:
            Dictionary with entry counts by state and operation.
        """
        with self._db.transaction() as conn:
            by_state = {
                row[0]: row[1]
                for row in conn.execute(
                    "SELECT sync_state, COUNT(*) FROM change_log GROUP BY sync_state"
                )
            }
            by_operation = {
                row[0]: row[1]
                for row in conn.execute(
                    "SELECT operation, COUNT(*) FROM change_log GROUP BY operation"
                )
            }
            dead_letters = conn.execute(
                "SELECT COUNT(*) FROM dead_letters"
            ).fetchone()[0]

        return {
            "pending": by_state.get(SyncState.PENDING.value, 0),
            "in_flight": by_state.get(SyncState.IN_FLIGHT.value, 0),
            "dead_letters": dead_letters,
            "by_operation": by_operation,
            "total": sum(by_state.values()),
        }
