"""Sync coordinator: drains the change log into the remote and applies results.

One run moves through IDLE -> DRAINING -> RECONCILING -> APPLYING -> IDLE.
Only one run is active at a time; triggers that arrive during a run set a
single "run again" flag instead of starting a second run.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..errors import (
    ConflictUnresolved,
    NetworkFailure,
    RejectedByServer,
    StorageFailure,
)
from ..store.change_log import ChangeLog
from ..store.models import ChangeLogEntry, Operation, Record, utcnow
from ..store.record_table import RecordTable
from .backoff import Backoff
from .connectivity import ConnectivityMonitor
from .gateway import Accepted, Conflict, PushOutcome, RemoteGateway
from .resolver import ConflictResolver, Decision, LastWriterWins, Merge, TakeLocal, TakeRemote

logger = logging.getLogger(__name__)

PULL_CURSOR_KEY = "pull_high_water"


class CoordinatorState(Enum):
    IDLE = "idle"
    DRAINING = "draining"
    RECONCILING = "reconciling"
    APPLYING = "applying"


class SyncSignal(Enum):
    """Reasons to wake the coordinator."""

    LOCAL_WRITE = "local_write"
    CONNECTIVITY_RESTORED = "connectivity_restored"
    RETRY_TIMER = "retry_timer"
    BACKLOG = "backlog"  # Previous run left pending entries
    MANUAL = "manual"


class SessionStatus(Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"  # Some entries dead-lettered
    ABORTED = "aborted"


class EntryOutcome(Enum):
    SYNCED = "synced"
    RESOLVED_REMOTE = "resolved_remote"
    RESOLVED_LOCAL = "resolved_local"  # Rebased, pushed again next run
    MERGED = "merged"  # Rebased, pushed again next run
    SUPERSEDED = "superseded"  # Newer local write exists, result discarded
    DEAD_LETTERED = "dead_lettered"
    REVERTED = "reverted"  # Back to pending after abort


@dataclass
class SyncSession:
    """Bookkeeping for a single coordinator run."""

    session_id: str
    started_at: datetime
    entries: list[ChangeLogEntry]
    trigger: SyncSignal = SyncSignal.MANUAL
    outcomes: dict[int, EntryOutcome] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.SUCCESS
    error: str | None = None
    finished_at: datetime | None = None

    def count(self, outcome: EntryOutcome) -> int:
        return sum(1 for o in self.outcomes.values() if o is outcome)

    def to_dict(self) -> dict[str, Any]:
        """Summary for status reporting."""
        return {
            "session_id": self.session_id,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "entries": len(self.entries),
            "outcomes": {
                o.value: self.count(o) for o in EntryOutcome if self.count(o)
            },
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class _Action(Enum):
    WRITE = "write"
    PURGE = "purge"
    REBASE = "rebase"


@dataclass
class _Resolution:
    """What the applying phase must do for one reconciled entry."""

    entry: ChangeLogEntry
    action: _Action
    outcome: EntryOutcome
    record: Record
    base_version: int = 0


def reconcile_accepted(entry: ChangeLogEntry, server_record: Record) -> Record:
    """Local record state after the remote accepted ``entry``.

    The local snapshot is kept and only its version is taken from the
    server, so applying the same acceptance twice yields the same record.
    """
    return replace(entry.payload_snapshot, version=server_record.version)


class SyncCoordinator:
    """Drives synchronization between the local store and the remote.

    All collaborators are injected. The record table and the change log must
    share one LocalDatabase so record writes and log updates commit together.
    """

    def __init__(
        self,
        table: RecordTable,
        log: ChangeLog,
        gateway: RemoteGateway,
        monitor: ConnectivityMonitor | None = None,
        resolver: ConflictResolver | None = None,
        batch_size: int = 50,
        push_timeout: float = 10.0,
        backoff: Backoff | None = None,
        max_passes: int = 8,
    ):
        """Initialize the coordinator.

        Args:
            table: Durable local table.
            log: Change log to drain.
            gateway: Remote gateway used to push and pull.
            monitor: Connectivity monitor. None means always online.
            resolver: Conflict resolver, last-writer-wins by default.
            batch_size: Maximum entries per run.
            push_timeout: Seconds allowed for each push.
            backoff: Retry delay policy after network failures.
            max_passes: Maximum back-to-back runs per sync_now call.
        """
        self.table = table
        self.log = log
        self.gateway = gateway
        self.monitor = monitor
        self.resolver = resolver or LastWriterWins()
        self.batch_size = batch_size
        self.push_timeout = push_timeout
        self.backoff = backoff or Backoff()
        self.max_passes = max_passes

        self._state = CoordinatorState.IDLE
        self._lock = asyncio.Lock()
        self._rerun = False
        self._signals: asyncio.Queue[SyncSignal] = asyncio.Queue()
        self._running = False
        self._task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None
        self._dead_letter_callbacks: list[Callable[[ChangeLogEntry, str], None]] = []
        self._last_session: SyncSession | None = None
        self._last_success: datetime | None = None
        self.next_retry_delay: float | None = None

        if monitor is not None:
            monitor.on_online(
                lambda: self.request_sync(SyncSignal.CONNECTIVITY_RESTORED)
            )

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def last_session(self) -> SyncSession | None:
        return self._last_session

    @property
    def is_online(self) -> bool:
        return self.monitor is None or self.monitor.is_online

    def on_dead_letter(self, callback: Callable[[ChangeLogEntry, str], None]) -> None:
        """Register a callable told about every change the server rejects."""
        self._dead_letter_callbacks.append(callback)

    # ==================== Triggering ====================

    def request_sync(self, signal: SyncSignal = SyncSignal.MANUAL) -> None:
        """Ask for a sync run without waiting for it.

        During an active run this only sets the "run again" flag. Without a
        running trigger loop the request is dropped; call sync_now() instead.
        """
        if self._lock.locked():
            self._rerun = True
            logger.debug(f"Sync requested ({signal.value}) during run, coalesced")
            return
        if not self._running:
            logger.debug(f"Sync requested ({signal.value}) with no loop running")
            return
        self._signals.put_nowait(signal)

    async def sync_now(
        self, signal: SyncSignal = SyncSignal.MANUAL
    ) -> SyncSession | None:
        """Run sync immediately, repeating while triggers arrived meanwhile.

        Returns:
            The last session run, or None if nothing ran (offline, empty log,
            or another run already active).

        Raises:
            StorageFailure: the local store failed; pending state preserved.
            ConflictUnresolved: the resolver failed; pending state preserved.
        """
        if self._lock.locked():
            self._rerun = True
            return None

        async with self._lock:
            self._rerun = False
            session = await self._run(signal)
            passes = 1
            while self._rerun and passes < self.max_passes:
                self._rerun = False
                if session is not None and session.status is SessionStatus.ABORTED:
                    break
                passes += 1
                session = await self._run(SyncSignal.BACKLOG) or session
            return session

    # ==================== Run ====================

    async def _run(self, signal: SyncSignal) -> SyncSession | None:
        if not self.is_online:
            logger.debug("Offline, skipping sync run")
            return None

        self._state = CoordinatorState.DRAINING
        try:
            entries = self.log.peek_batch(self.batch_size)
        except StorageFailure:
            self._state = CoordinatorState.IDLE
            raise
        if not entries:
            self._state = CoordinatorState.IDLE
            return None

        session = SyncSession(
            session_id=str(uuid.uuid4()),
            started_at=utcnow(),
            entries=entries,
            trigger=signal,
        )
        logger.info(
            f"Sync session {session.session_id[:8]} started "
            f"({len(entries)} entries, trigger={signal.value})"
        )

        planned: list[_Resolution] = []
        try:
            self._state = CoordinatorState.RECONCILING
            await self._reconcile(session, planned)
        except NetworkFailure as e:
            session.status = SessionStatus.ABORTED
            session.error = str(e)
            logger.warning(f"Sync aborted by network failure: {e}")
            self._finish(session, planned)
            self._schedule_retry()
            return session
        except BaseException as e:
            # Cancellation, resolver failure or storage failure
            session.status = SessionStatus.ABORTED
            session.error = str(e) or type(e).__name__
            self._finish(session, planned)
            raise

        self._finish(session, planned)
        if session.count(EntryOutcome.DEAD_LETTERED):
            session.status = SessionStatus.PARTIAL_FAILURE
        self.backoff.reset()
        self.next_retry_delay = None
        self._last_success = session.finished_at
        logger.info(
            f"Sync session {session.session_id[:8]} finished: "
            f"{session.status.value}, {session.to_dict()['outcomes']}"
        )
        return session

    async def _push(self, entry: ChangeLogEntry) -> PushOutcome:
        try:
            return await asyncio.wait_for(
                self.gateway.push(entry), timeout=self.push_timeout
            )
        except asyncio.TimeoutError as e:
            raise NetworkFailure(
                f"Push of entry {entry.sequence_no} timed out after {self.push_timeout}s"
            ) from e

    async def _reconcile(
        self, session: SyncSession, planned: list[_Resolution]
    ) -> None:
        for entry in session.entries:
            try:
                outcome = await self._push(entry)
            except RejectedByServer as e:
                self._dead_letter(session, entry, e.reason)
                continue
            planned.append(self._plan(entry, outcome))

    def _dead_letter(
        self, session: SyncSession, entry: ChangeLogEntry, reason: str
    ) -> None:
        self.log.dead_letter(entry.sequence_no, reason)
        session.outcomes[entry.sequence_no] = EntryOutcome.DEAD_LETTERED
        for callback in self._dead_letter_callbacks:
            try:
                callback(entry, reason)
            except Exception as e:
                logger.error(f"Dead-letter callback failed: {e}", exc_info=True)

    def _plan(self, entry: ChangeLogEntry, outcome: PushOutcome) -> _Resolution:
        if isinstance(outcome, Accepted):
            if entry.operation is Operation.DELETE:
                return _Resolution(
                    entry, _Action.PURGE, EntryOutcome.SYNCED, entry.payload_snapshot
                )
            return _Resolution(
                entry,
                _Action.WRITE,
                EntryOutcome.SYNCED,
                reconcile_accepted(entry, outcome.record),
            )

        if not isinstance(outcome, Conflict):
            raise TypeError(f"Unexpected push outcome: {outcome!r}")

        local = entry.payload_snapshot
        remote = outcome.record
        decision = self._apply_tombstone_policy(
            self._resolve(local, remote), local, remote
        )

        if isinstance(decision, TakeRemote):
            action = _Action.PURGE if remote.deleted else _Action.WRITE
            return _Resolution(entry, action, EntryOutcome.RESOLVED_REMOTE, remote)

        if isinstance(decision, TakeLocal):
            rebased = replace(local, version=remote.version + 1)
            return _Resolution(
                entry,
                _Action.REBASE,
                EntryOutcome.RESOLVED_LOCAL,
                rebased,
                base_version=remote.version,
            )

        merged = replace(
            decision.record, id=entry.record_id, version=remote.version + 1
        )
        return _Resolution(
            entry,
            _Action.REBASE,
            EntryOutcome.MERGED,
            merged,
            base_version=remote.version,
        )

    def _resolve(self, local: Record, remote: Record) -> Decision:
        try:
            decision = self.resolver.resolve(local, remote)
        except Exception as e:
            raise ConflictUnresolved(
                f"Resolver failed for {local.id}: {e}"
            ) from e
        if not isinstance(decision, (TakeLocal, TakeRemote, Merge)):
            raise ConflictUnresolved(
                f"Resolver returned {decision!r} for {local.id}"
            )
        return decision

    @staticmethod
    def _apply_tombstone_policy(
        decision: Decision, local: Record, remote: Record
    ) -> Decision:
        """A merge involving a deleted record resolves to the deletion."""
        if not isinstance(decision, Merge):
            return decision
        if remote.deleted:
            return TakeRemote()
        if local.deleted:
            return TakeLocal()
        return decision

    # ==================== Apply ====================

    def _finish(self, session: SyncSession, planned: list[_Resolution]) -> None:
        """Apply decided results, then revert whatever is still in flight."""
        self._state = CoordinatorState.APPLYING
        try:
            for resolution in planned:
                session.outcomes[resolution.entry.sequence_no] = self._apply(
                    resolution
                )
        except BaseException as e:
            session.status = SessionStatus.ABORTED
            session.error = session.error or str(e) or type(e).__name__
            self._revert_unfinished(session, best_effort=True)
            raise
        else:
            self._revert_unfinished(session)
        finally:
            session.finished_at = utcnow()
            self._last_session = session
            self._state = CoordinatorState.IDLE

    def _revert_unfinished(self, session: SyncSession, best_effort: bool = False) -> None:
        for entry in session.entries:
            if entry.sequence_no in session.outcomes:
                continue
            try:
                self.log.mark_failed(entry.sequence_no, session.error)
            except StorageFailure as e:
                if not best_effort:
                    raise
                # recover() reverts it on the next start
                logger.error(f"Could not revert entry {entry.sequence_no}: {e}")
                continue
            session.outcomes[entry.sequence_no] = EntryOutcome.REVERTED

    def _apply(self, resolution: _Resolution) -> EntryOutcome:
        entry = resolution.entry
        seq = entry.sequence_no

        with self.log.db.transaction():
            if self.log.has_newer_pending(entry.record_id, seq):
                # A local write after this entry was taken wins
                self.log.mark_synced(seq)
                logger.debug(f"Result for entry {seq} superseded by newer write")
                return EntryOutcome.SUPERSEDED

            if resolution.action is _Action.PURGE:
                self.table.purge(entry.record_id)
                self.log.mark_synced(seq)
            elif resolution.action is _Action.WRITE:
                self.table.put(resolution.record)
                self.log.mark_synced(seq)
            else:
                self.table.put(resolution.record)
                self.log.rebase(seq, resolution.record, resolution.base_version)
                self._rerun = True

        return resolution.outcome

    # ==================== Pull ====================

    async def pull(self, since: int | None = None) -> int:
        """Fetch remote changes and apply those with no local work pending.

        Records with unconfirmed local changes are left alone; any divergence
        surfaces as a conflict when those changes are pushed.

        Args:
            since: Remote version cursor. Defaults to the stored high-water mark.

        Returns:
            Number of records written or purged locally.
        """
        async with self._lock:
            if since is None:
                since = int(self.log.db.get_meta(PULL_CURSOR_KEY) or 0)

            try:
                records = await asyncio.wait_for(
                    self.gateway.pull(since), timeout=self.push_timeout
                )
            except asyncio.TimeoutError as e:
                raise NetworkFailure(f"Pull timed out after {self.push_timeout}s") from e

            applied = 0
            high_water = since
            with self.log.db.transaction():
                for remote in records:
                    high_water = max(high_water, remote.version)
                    if self.log.has_pending_work(remote.id):
                        continue

                    local = self.table.get(remote.id)
                    if remote.deleted:
                        if local is not None:
                            self.table.purge(remote.id)
                            applied += 1
                    elif local is None or remote.version > local.version:
                        self.table.put(remote)
                        applied += 1

                self.log.db.set_meta(PULL_CURSOR_KEY, str(high_water))

            rerun = self._rerun
            self._rerun = False

        if rerun:
            # Writes during the pull still need a push
            self.request_sync(SyncSignal.LOCAL_WRITE)
        logger.info(f"Pulled {len(records)} records, applied {applied}")
        return applied

    # ==================== Background ====================

    def _schedule_retry(self) -> None:
        delay = self.backoff.next_delay()
        self.next_retry_delay = delay
        logger.info(f"Retrying sync in {delay:.1f}s")

        if not self._running:
            return
        if self._retry_task is not None:
            self._retry_task.cancel()
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def _retry_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_task = None
        self.request_sync(SyncSignal.RETRY_TIMER)

    async def run_forever(self) -> None:
        """Consume the trigger channel until cancelled.

        Raises:
            StorageFailure: the local store failed; the loop stops.
        """
        self._running = True
        logger.info("Sync coordinator loop started")
        try:
            while True:
                signal = await self._signals.get()
                while not self._signals.empty():
                    self._signals.get_nowait()

                try:
                    session = await self.sync_now(signal)
                except StorageFailure:
                    logger.error("Sync stopped by local storage failure", exc_info=True)
                    raise
                except Exception as e:
                    logger.error(f"Sync run failed: {e}", exc_info=True)
                    continue

                if (
                    session is not None
                    and session.status is not SessionStatus.ABORTED
                    and self.log.pending_count()
                ):
                    self.request_sync(SyncSignal.BACKLOG)
        finally:
            self._running = False
            if self._retry_task is not None:
                self._retry_task.cancel()
                self._retry_task = None
            logger.info("Sync coordinator loop stopped")

    async def start(self) -> None:
        """Start the trigger loop as a background task and drain the backlog."""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self.run_forever())
        self.request_sync(SyncSignal.MANUAL)

    async def stop(self) -> None:
        """Cancel the trigger loop. In-flight entries revert to pending."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._running = False

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dictionary with coordinator and log statistics.
        """
        log_stats = self.log.get_stats()

        return {
            "state": self._state.value,
            "online": self.is_online,
            "last_success": self._last_success.isoformat() if self._last_success else None,
            "last_session": self._last_session.to_dict() if self._last_session else None,
            "consecutive_failures": self.backoff.failures,
            "next_retry_delay": self.next_retry_delay,
            "pending_entries": log_stats["pending"],
            "in_flight_entries": log_stats["in_flight"],
            "dead_letters": log_stats["dead_letters"],
        }
