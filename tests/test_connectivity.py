"""Tests for the connectivity monitor and reachability probe."""

import asyncio

import httpx
import pytest

from localsync.sync import ConnectivityMonitor, ReachabilityProbe


class TestConnectivityMonitor:
    def test_initial_state(self):
        assert ConnectivityMonitor().is_online is False
        assert ConnectivityMonitor(initially_online=True).is_online is True

    def test_zero_window_emits_immediately(self):
        monitor = ConnectivityMonitor(settle_window=0)
        calls = []
        monitor.on_online(lambda: calls.append("online"))

        monitor.report(True)

        assert monitor.is_online is True
        assert calls == ["online"]

    def test_same_state_emits_nothing(self):
        monitor = ConnectivityMonitor(settle_window=0, initially_online=True)
        calls = []
        monitor.on_online(lambda: calls.append("online"))

        monitor.report(True)
        monitor.report(True)

        assert calls == []

    @pytest.mark.asyncio
    async def test_change_settles_after_window(self):
        monitor = ConnectivityMonitor(settle_window=0.05)
        calls = []
        monitor.on_online(lambda: calls.append("online"))

        monitor.report(True)
        assert monitor.is_online is False

        await asyncio.sleep(0.1)

        assert monitor.is_online is True
        assert calls == ["online"]

    @pytest.mark.asyncio
    async def test_flap_within_window_suppressed(self):
        monitor = ConnectivityMonitor(settle_window=0.05)
        calls = []
        monitor.on_online(lambda: calls.append("online"))

        monitor.report(True)
        monitor.report(False)
        monitor.report(True)
        monitor.report(False)
        await asyncio.sleep(0.1)

        assert monitor.is_online is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_repeated_reports_settle_once(self):
        monitor = ConnectivityMonitor(settle_window=0.05)
        calls = []
        monitor.on_online(lambda: calls.append("online"))

        for _ in range(5):
            monitor.report(True)
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.1)

        assert calls == ["online"]

    @pytest.mark.asyncio
    async def test_subscribers_receive_transitions(self):
        monitor = ConnectivityMonitor(settle_window=0)
        queue = monitor.subscribe()

        monitor.report(True)
        monitor.report(False)

        first = queue.get_nowait()
        second = queue.get_nowait()
        assert first.online is True
        assert second.online is False
        assert first.at <= second.at

        monitor.unsubscribe(queue)
        monitor.report(True)
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_events_iterator(self):
        monitor = ConnectivityMonitor(settle_window=0)
        received = []

        async def consume():
            async for event in monitor.events():
                received.append(event.online)
                if len(received) == 2:
                    break

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        monitor.report(True)
        monitor.report(False)
        await asyncio.wait_for(task, timeout=1.0)

        assert received == [True, False]
        assert monitor._subscribers == []

    @pytest.mark.asyncio
    async def test_close_drops_pending_transition(self):
        monitor = ConnectivityMonitor(settle_window=0.05)

        monitor.report(True)
        await monitor.close()
        await asyncio.sleep(0.1)

        assert monitor.is_online is False


def _probe(handler, monitor=None):
    return ReachabilityProbe(
        monitor or ConnectivityMonitor(settle_window=0),
        "http://remote.test/health",
        interval_seconds=0.01,
        transport=httpx.MockTransport(handler),
    )


class TestReachabilityProbe:
    @pytest.mark.asyncio
    async def test_check_ok(self):
        probe = _probe(lambda request: httpx.Response(200))
        try:
            assert await probe.check() is True
        finally:
            await probe.stop()

    @pytest.mark.asyncio
    async def test_check_client_error_counts_as_reachable(self):
        probe = _probe(lambda request: httpx.Response(404))
        try:
            assert await probe.check() is True
        finally:
            await probe.stop()

    @pytest.mark.asyncio
    async def test_check_server_error(self):
        probe = _probe(lambda request: httpx.Response(503))
        try:
            assert await probe.check() is False
        finally:
            await probe.stop()

    @pytest.mark.asyncio
    async def test_check_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        probe = _probe(handler)
        try:
            assert await probe.check() is False
        finally:
            await probe.stop()

    @pytest.mark.asyncio
    async def test_loop_reports_to_monitor(self):
        monitor = ConnectivityMonitor(settle_window=0)
        probe = _probe(lambda request: httpx.Response(200), monitor)

        await probe.start()
        try:
            for _ in range(100):
                if monitor.is_online:
                    break
                await asyncio.sleep(0.01)
        finally:
            await probe.stop()

        assert monitor.is_online is True
