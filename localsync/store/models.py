"""Data types shared by the record table and the change log."""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO timestamp, assuming UTC when no offset is given."""
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class Operation(Enum):
    """Kind of mutation recorded in the change log."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncState(Enum):
    """Lifecycle of a change log entry."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"  # Dead-lettered


@dataclass
class Record:
    """An application entity as stored locally."""

    id: str
    version: int = 0
    payload: Any = None
    updated_at: datetime = field(default_factory=utcnow)
    deleted: bool = False

    def with_version(self, version: int) -> "Record":
        return replace(self, version=version)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "version": self.version,
            "payload": self.payload,
            "updated_at": self.updated_at.isoformat(),
            "deleted": self.deleted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Record":
        """Create from dictionary.

        Missing fields fall back to defaults so a server may answer with a
        partial record (e.g. only ``id`` and ``version``).
        """
        return cls(
            id=data["id"],
            version=int(data.get("version", 0)),
            payload=data.get("payload"),
            updated_at=(
                parse_timestamp(data["updated_at"])
                if data.get("updated_at")
                else utcnow()
            ),
            deleted=bool(data.get("deleted", False)),
        )


@dataclass
class ChangeLogEntry:
    """A single not-yet-confirmed mutation."""

    sequence_no: int
    record_id: str
    operation: Operation
    payload_snapshot: Record
    base_version: int
    sync_state: SyncState = SyncState.PENDING
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for transport."""
        return {
            "sequence_no": self.sequence_no,
            "record_id": self.record_id,
            "operation": self.operation.value,
            "record": self.payload_snapshot.to_dict(),
            "base_version": self.base_version,
        }


@dataclass
class DeadLetter:
    """A change the server refused permanently."""

    sequence_no: int
    record_id: str
    operation: Operation
    payload_snapshot: Record
    base_version: int
    reason: str
    created_at: datetime
    dead_lettered_at: datetime
