"""Tests for the HTTP gateway using httpx's mock transport."""

import json

import httpx
import pytest

from localsync.errors import NetworkFailure, RejectedByServer
from localsync.store import ChangeLogEntry, Operation, Record
from localsync.sync import Accepted, Conflict, HttpGateway


def _entry(record_id="n1", base_version=0):
    return ChangeLogEntry(
        sequence_no=1,
        record_id=record_id,
        operation=Operation.CREATE,
        payload_snapshot=Record(id=record_id, version=1, payload={"title": "A"}),
        base_version=base_version,
    )


def _gateway(handler, token=None):
    return HttpGateway(
        "http://remote.test/",
        token=token,
        transport=httpx.MockTransport(handler),
    )


class TestPush:
    @pytest.mark.asyncio
    async def test_accepted(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"record": {"id": "n1", "version": 1}})

        gateway = _gateway(handler)
        try:
            outcome = await gateway.push(_entry())
        finally:
            await gateway.close()

        assert isinstance(outcome, Accepted)
        assert outcome.record.version == 1
        assert seen["path"] == "/sync/push"
        assert seen["body"]["operation"] == "create"
        assert seen["body"]["base_version"] == 0
        assert seen["body"]["record"]["payload"] == {"title": "A"}

    @pytest.mark.asyncio
    async def test_conflict(self):
        server_record = {
            "id": "n1",
            "version": 4,
            "payload": {"title": "C"},
            "updated_at": "2026-01-01T00:00:00+00:00",
            "deleted": False,
        }
        gateway = _gateway(
            lambda request: httpx.Response(409, json={"record": server_record})
        )
        try:
            outcome = await gateway.push(_entry())
        finally:
            await gateway.close()

        assert isinstance(outcome, Conflict)
        assert outcome.record.payload == {"title": "C"}
        assert outcome.record.version == 4

    @pytest.mark.asyncio
    async def test_server_error_is_network_failure(self):
        gateway = _gateway(lambda request: httpx.Response(503))
        try:
            with pytest.raises(NetworkFailure):
                await gateway.push(_entry())
        finally:
            await gateway.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [408, 429])
    async def test_busy_remote_is_network_failure(self, status):
        gateway = _gateway(lambda request: httpx.Response(status))
        try:
            with pytest.raises(NetworkFailure):
                await gateway.push(_entry())
        finally:
            await gateway.close()

    @pytest.mark.asyncio
    async def test_client_error_is_rejected(self):
        gateway = _gateway(
            lambda request: httpx.Response(422, text="payload too large")
        )
        try:
            with pytest.raises(RejectedByServer) as exc_info:
                await gateway.push(_entry())
        finally:
            await gateway.close()

        assert "422" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_malformed_body_is_rejected(self):
        gateway = _gateway(lambda request: httpx.Response(200, json={"ok": True}))
        try:
            with pytest.raises(RejectedByServer):
                await gateway.push(_entry())
        finally:
            await gateway.close()

    @pytest.mark.asyncio
    async def test_connection_error_is_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = _gateway(handler)
        try:
            with pytest.raises(NetworkFailure):
                await gateway.push(_entry())
        finally:
            await gateway.close()

    @pytest.mark.asyncio
    async def test_timeout_is_network_failure(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        gateway = _gateway(handler)
        try:
            with pytest.raises(NetworkFailure):
                await gateway.push(_entry())
        finally:
            await gateway.close()

    @pytest.mark.asyncio
    async def test_bearer_token_sent(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={"record": {"id": "n1", "version": 1}})

        gateway = _gateway(handler, token="secret")
        try:
            await gateway.push(_entry())
        finally:
            await gateway.close()

        assert seen["auth"] == "Bearer secret"


class TestPull:
    @pytest.mark.asyncio
    async def test_pull_parses_records(self):
        seen = {}

        def handler(request):
            seen["since"] = request.url.params.get("since")
            return httpx.Response(
                200,
                json={
                    "records": [
                        {"id": "a", "version": 3, "payload": 1},
                        {"id": "b", "version": 4, "deleted": True},
                    ]
                },
            )

        gateway = _gateway(handler)
        try:
            records = await gateway.pull(2)
        finally:
            await gateway.close()

        assert seen["since"] == "2"
        assert [r.id for r in records] == ["a", "b"]
        assert records[1].deleted is True

    @pytest.mark.asyncio
    async def test_pull_error_status(self):
        gateway = _gateway(lambda request: httpx.Response(404))
        try:
            with pytest.raises(NetworkFailure):
                await gateway.pull(0)
        finally:
            await gateway.close()


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self):
        gateway = _gateway(lambda request: httpx.Response(200))
        try:
            assert await gateway.health() is True
        finally:
            await gateway.close()

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        gateway = _gateway(handler)
        try:
            assert await gateway.health() is False
        finally:
            await gateway.close()
