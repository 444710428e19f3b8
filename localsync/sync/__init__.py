"""Sync engine: conflict resolution, remote gateway, connectivity and coordinator."""

from .backoff import Backoff
from .connectivity import ConnectivityEvent, ConnectivityMonitor, ReachabilityProbe
from .coordinator import (
    CoordinatorState,
    EntryOutcome,
    SessionStatus,
    SyncCoordinator,
    SyncSession,
    SyncSignal,
    reconcile_accepted,
)
from .gateway import Accepted, Conflict, HttpGateway, RemoteGateway
from .resolver import (
    ConflictResolver,
    FieldMergeResolver,
    LastWriterWins,
    Merge,
    TakeLocal,
    TakeRemote,
)

__all__ = [
    "Accepted",
    "Backoff",
    "Conflict",
    "ConflictResolver",
    "ConnectivityEvent",
    "ConnectivityMonitor",
    "CoordinatorState",
    "EntryOutcome",
    "FieldMergeResolver",
    "HttpGateway",
    "LastWriterWins",
    "Merge",
    "ReachabilityProbe",
    "RemoteGateway",
    "SessionStatus",
    "SyncCoordinator",
    "SyncSession",
    "SyncSignal",
    "TakeLocal",
    "TakeRemote",
    "reconcile_accepted",
]
