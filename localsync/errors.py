"""Error taxonomy for the local store and sync engine."""


class LocalSyncError(Exception):
    """Base class for all localsync errors."""


class StorageFailure(LocalSyncError):
    """The local medium is unavailable or corrupt.

    Fatal to the operation that raised it. Never retried silently.
    """


class ConflictUnresolved(StorageFailure):
    """A conflict resolver failed to return a decision."""


class NetworkFailure(LocalSyncError):
    """The remote could not be reached. Transient, retried with backoff."""


class RejectedByServer(LocalSyncError):
    """The remote permanently refused a change."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
