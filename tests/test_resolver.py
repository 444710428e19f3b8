"""Tests for conflict resolution policies and retry backoff."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from localsync.store import Record
from localsync.sync import (
    Backoff,
    FieldMergeResolver,
    LastWriterWins,
    Merge,
    TakeLocal,
    TakeRemote,
)
from localsync.sync.resolver import union_lists

T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record(payload, minutes=0, version=1, deleted=False):
    return Record(
        id="n1",
        version=version,
        payload=payload,
        updated_at=T0 + timedelta(minutes=minutes),
        deleted=deleted,
    )


class TestLastWriterWins:
    def test_later_local_wins(self):
        decision = LastWriterWins().resolve(_record("B", 5), _record("C", 1))
        assert decision == TakeLocal()

    def test_later_remote_wins(self):
        decision = LastWriterWins().resolve(_record("B", 1), _record("C", 5))
        assert decision == TakeRemote()

    def test_tie_goes_to_remote(self):
        decision = LastWriterWins().resolve(_record("B", 1), _record("C", 1))
        assert decision == TakeRemote()

    def test_deterministic(self):
        resolver = LastWriterWins()
        local, remote = _record("B", 3), _record("C", 3)

        decisions = {resolver.resolve(local, remote) for _ in range(10)}

        assert len(decisions) == 1


class TestFieldMergeResolver:
    def test_unions_list_fields(self):
        local = _record({"title": "mine", "tags": ["a", "b"]}, minutes=5)
        remote = _record({"title": "theirs", "tags": ["b", "c"]}, minutes=1, version=4)

        decision = FieldMergeResolver().resolve(local, remote)

        assert isinstance(decision, Merge)
        assert decision.record.payload == {"title": "mine", "tags": ["a", "b", "c"]}
        assert decision.record.version == 4

    def test_only_named_fields_merged(self):
        local = _record({"tags": ["a"], "refs": [1]}, minutes=5)
        remote = _record({"tags": ["b"], "refs": [2]}, minutes=1)

        decision = FieldMergeResolver(list_fields=["tags"]).resolve(local, remote)

        assert decision.record.payload == {"tags": ["a", "b"], "refs": [1]}

    def test_no_new_items_is_plain_lww(self):
        local = _record({"tags": ["a"]}, minutes=1)
        remote = _record({"tags": ["a"]}, minutes=5)

        assert FieldMergeResolver().resolve(local, remote) == TakeRemote()

    def test_non_dict_payload_falls_back(self):
        assert FieldMergeResolver().resolve(_record("B", 5), _record("C", 1)) == TakeLocal()

    def test_tombstone_falls_back(self):
        local = _record({"tags": ["a"]}, minutes=5)
        remote = _record({"tags": ["b"]}, minutes=1, deleted=True)

        assert FieldMergeResolver().resolve(local, remote) == TakeLocal()

    def test_deterministic(self):
        resolver = FieldMergeResolver()
        local = _record({"tags": [{"k": 1}, "x"]}, minutes=2)
        remote = _record({"tags": [{"k": 2}]}, minutes=2)

        assert resolver.resolve(local, remote) == resolver.resolve(local, remote)

    def test_union_lists_caps_size(self):
        merged = union_lists(list(range(5)), list(range(3, 10)), max_size=6)
        assert merged == [0, 1, 2, 3, 4, 5]


class TestBackoff:
    def test_doubles_from_initial(self):
        backoff = Backoff(initial=1.0, maximum=60.0, jitter=0)

        delays = [backoff.next_delay() for _ in range(8)]

        assert delays == [1, 2, 4, 8, 16, 32, 60, 60]
        assert backoff.failures == 8

    def test_reset(self):
        backoff = Backoff(jitter=0)
        backoff.next_delay()
        backoff.next_delay()

        backoff.reset()

        assert backoff.next_delay() == 1

    @pytest.mark.parametrize("seed", [1, 2, 3])
    def test_jitter_within_bounds(self, seed):
        backoff = Backoff(initial=1.0, maximum=60.0, jitter=0.2, rng=random.Random(seed))

        for expected in [1, 2, 4, 8]:
            delay = backoff.next_delay()
            assert expected * 0.8 <= delay <= expected * 1.2
