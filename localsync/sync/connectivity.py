"""Network reachability tracking with debounced transitions."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable

import httpx

from ..store.models import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectivityEvent:
    """A settled change of reachability."""

    online: bool
    at: datetime


class ConnectivityMonitor:
    """Tracks whether the remote is reachable.

    Raw observations come in through ``report()``. A change only counts once
    it has held for ``settle_window`` seconds; shorter flaps emit nothing.
    Each settled Offline->Online transition calls the ``on_online``
    callbacks exactly once.

    ``report()`` must be called from the event loop's thread.
    """

    def __init__(self, settle_window: float = 2.0, initially_online: bool = False):
        """Initialize the monitor.

        Args:
            settle_window: Seconds a change must persist before it is emitted.
            initially_online: Starting state, before any observation.
        """
        self.settle_window = settle_window
        self._online = initially_online
        self._observed = initially_online
        self._settle_task: asyncio.Task | None = None
        self._subscribers: list[asyncio.Queue[ConnectivityEvent]] = []
        self._online_callbacks: list[Callable[[], None]] = []

    @property
    def is_online(self) -> bool:
        """Settled reachability state."""
        return self._online

    def on_online(self, callback: Callable[[], None]) -> None:
        """Register a callable run on every settled Offline->Online transition."""
        self._online_callbacks.append(callback)

    def subscribe(self) -> "asyncio.Queue[ConnectivityEvent]":
        """Get a queue that receives every transition from now on."""
        queue: asyncio.Queue[ConnectivityEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[ConnectivityEvent]") -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def events(self) -> AsyncIterator[ConnectivityEvent]:
        """Iterate over transitions as they happen. May never yield."""
        queue = self.subscribe()
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(queue)

    def report(self, online: bool) -> None:
        """Feed a raw reachability observation."""
        self._observed = online

        if online == self._online:
            # Flap ended before settling
            self._cancel_settle()
            return

        if self._settle_task is not None:
            return

        if self.settle_window <= 0:
            self._emit(online)
            return

        self._settle_task = asyncio.get_running_loop().create_task(
            self._settle_after()
        )

    async def _settle_after(self) -> None:
        await asyncio.sleep(self.settle_window)
        self._settle_task = None
        if self._observed != self._online:
            self._emit(self._observed)

    def _cancel_settle(self) -> None:
        if self._settle_task is not None:
            self._settle_task.cancel()
            self._settle_task = None

    def _emit(self, online: bool) -> None:
        self._online = online
        event = ConnectivityEvent(online=online, at=utcnow())
        logger.info(f"Connectivity {'restored' if online else 'lost'}")

        for queue in self._subscribers:
            queue.put_nowait(event)

        if online:
            for callback in self._online_callbacks:
                callback()

    async def close(self) -> None:
        """Drop any pending, unsettled transition."""
        self._cancel_settle()


class ReachabilityProbe:
    """Background task polling a URL and reporting results to a monitor."""

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: str,
        interval_seconds: float = 15.0,
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the probe.

        Args:
            monitor: Monitor receiving the observations.
            url: URL to poll. Any response below 500 counts as reachable.
            interval_seconds: Seconds between polls.
            timeout: Per-request timeout in seconds.
            transport: Optional httpx transport, used by tests.
        """
        self._monitor = monitor
        self.url = url
        self.interval_seconds = interval_seconds
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._task: asyncio.Task | None = None
        self._running = False

    async def check(self) -> bool:
        """Poll once and return whether the URL answered."""
        try:
            response = await self._client.get(self.url)
        except httpx.HTTPError as e:
            logger.debug(f"Probe of {self.url} failed: {e}")
            return False
        return response.status_code < 500

    async def start(self) -> None:
        """Start polling as a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Reachability probe started ({self.url}, every {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop polling."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.aclose()
        logger.info("Reachability probe stopped")

    async def _run_loop(self) -> None:
        while self._running:
            self._monitor.report(await self.check())
            await asyncio.sleep(self.interval_seconds)
