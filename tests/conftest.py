"""Shared fixtures: in-memory store and a scriptable fake remote."""

import asyncio
from dataclasses import replace

import pytest

from localsync.errors import RejectedByServer
from localsync.store import ChangeLog, DocumentStore, LocalDatabase, Operation, RecordTable
from localsync.store.models import ChangeLogEntry, Record
from localsync.sync import Accepted, Conflict, RemoteGateway


class FakeRemote(RemoteGateway):
    """In-process remote authority.

    A push conflicts when the server already holds a version newer than the
    entry's base version. Otherwise the server bumps its version and accepts.
    """

    def __init__(self):
        self.records: dict[str, Record] = {}
        self.pushed: list[ChangeLogEntry] = []
        self.failures: list[Exception] = []
        self.rejected_ids: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.push_started = asyncio.Event()

    async def push(self, entry):
        self.pushed.append(entry)
        self.push_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        if entry.record_id in self.rejected_ids:
            raise RejectedByServer(f"{entry.record_id} is read-only")

        server = self.records.get(entry.record_id)
        if server is not None and server.version > entry.base_version:
            return Conflict(server)

        version = (server.version if server else 0) + 1
        stored = replace(
            entry.payload_snapshot,
            version=version,
            deleted=entry.operation is Operation.DELETE,
        )
        self.records[entry.record_id] = stored
        return Accepted(Record(id=entry.record_id, version=version))

    async def pull(self, since):
        return [r for r in self.records.values() if r.version > since]


@pytest.fixture
def db():
    """Create an in-memory database."""
    database = LocalDatabase(":memory:")
    database.connect()
    yield database
    database.close()


@pytest.fixture
def table(db):
    return RecordTable(db)


@pytest.fixture
def change_log(db):
    return ChangeLog(db)


@pytest.fixture
def store(db, table, change_log):
    return DocumentStore(db, table, change_log)


@pytest.fixture
def remote():
    return FakeRemote()
