"""Wiring of store, gateway, monitor and coordinator from configuration."""

import asyncio
import logging

from .config import Config
from .errors import NetworkFailure
from .store import ChangeLog, DocumentStore, LocalDatabase, RecordTable
from .sync import (
    Backoff,
    ConnectivityMonitor,
    HttpGateway,
    ReachabilityProbe,
    RemoteGateway,
    SyncCoordinator,
    SyncSignal,
)
from .sync.resolver import ConflictResolver

logger = logging.getLogger(__name__)


class SyncNode:
    """One application instance: local store plus its sync machinery.

    Nothing here is global; each node owns its own database, coordinator
    and monitor.
    """

    def __init__(
        self,
        config: Config,
        gateway: RemoteGateway | None = None,
        resolver: ConflictResolver | None = None,
        db_path: str | None = None,
    ):
        """Initialize the node.

        Args:
            config: Loaded configuration.
            gateway: Remote gateway. Defaults to an HttpGateway on
                ``config.remote.base_url``.
            resolver: Conflict resolver. Defaults to last-writer-wins.
            db_path: Overrides ``config.store.db_path``.
        """
        self.config = config
        self.db = LocalDatabase(db_path or config.store.db_path)
        self.table = RecordTable(self.db)
        self.log = ChangeLog(self.db)
        self.store = DocumentStore(self.db, self.table, self.log)

        if gateway is None:
            if not config.remote.base_url:
                raise ValueError("remote.base_url is not configured")
            gateway = HttpGateway(
                config.remote.base_url,
                timeout=config.remote.timeout_seconds,
                token=config.remote.token,
            )
        self.gateway = gateway

        self.monitor = ConnectivityMonitor(
            settle_window=config.connectivity.settle_window_seconds
        )
        self.coordinator = SyncCoordinator(
            table=self.table,
            log=self.log,
            gateway=self.gateway,
            monitor=self.monitor,
            resolver=resolver,
            batch_size=config.sync.batch_size,
            push_timeout=config.sync.push_timeout_seconds,
            backoff=Backoff(
                initial=config.sync.backoff_initial_seconds,
                maximum=config.sync.backoff_max_seconds,
                jitter=config.sync.backoff_jitter,
            ),
        )
        self.probe: ReachabilityProbe | None = None

        if config.sync.sync_on_write:
            self.store.on_write(
                lambda _record_id: self.coordinator.request_sync(SyncSignal.LOCAL_WRITE)
            )

    def open(self) -> None:
        """Open the database and revert entries a previous process left in flight."""
        self.db.connect()
        self.log.recover()

    async def start(self) -> None:
        """Start probing reachability and the background sync loop."""
        probe_url = self.config.connectivity.resolve_probe_url(self.config.remote)
        if probe_url:
            self.probe = ReachabilityProbe(
                self.monitor,
                probe_url,
                interval_seconds=self.config.connectivity.probe_interval_seconds,
                timeout=self.config.connectivity.probe_timeout_seconds,
            )
            await self.probe.start()
        else:
            logger.warning("No probe URL configured, assuming online")
            self.monitor.report(True)

        if self.config.sync.enabled:
            await self.coordinator.start()

    async def stop(self) -> None:
        """Stop background tasks and close resources."""
        await self.coordinator.stop()
        if self.probe:
            await self.probe.stop()
            self.probe = None
        await self.monitor.close()
        await self.gateway.close()
        self.db.close()


async def run_node(config: Config, stop_event: asyncio.Event | None = None) -> None:
    """Run a node until ``stop_event`` is set or the task is cancelled."""
    node = SyncNode(config)
    node.open()

    if config.sync.pull_on_start:
        try:
            await node.coordinator.pull()
        except NetworkFailure as e:
            logger.warning(f"Initial pull failed, continuing offline: {e}")

    await node.start()
    try:
        if stop_event is not None:
            await stop_event.wait()
        else:
            await asyncio.Event().wait()
    finally:
        await node.stop()
