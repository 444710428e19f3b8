"""localsync: offline-first local store with background synchronization."""

from .errors import (
    ConflictUnresolved,
    LocalSyncError,
    NetworkFailure,
    RejectedByServer,
    StorageFailure,
)
from .node import SyncNode
from .store import DocumentStore, Record, open_store
from .sync import SyncCoordinator

__version__ = "0.1.0"

__all__ = [
    "ConflictUnresolved",
    "DocumentStore",
    "LocalSyncError",
    "NetworkFailure",
    "Record",
    "RejectedByServer",
    "StorageFailure",
    "SyncCoordinator",
    "SyncNode",
    "open_store",
]
