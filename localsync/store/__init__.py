"""Durable local storage: records, change log and application write path."""

from .change_log import ChangeLog, coalesce_operations
from .database import LocalDatabase
from .document_store import DocumentStore, open_store
from .models import ChangeLogEntry, DeadLetter, Operation, Record, SyncState
from .record_table import RecordTable

__all__ = [
    "ChangeLog",
    "ChangeLogEntry",
    "DeadLetter",
    "DocumentStore",
    "LocalDatabase",
    "Operation",
    "Record",
    "RecordTable",
    "SyncState",
    "coalesce_operations",
    "open_store",
]
