"""Conflict resolution policies.

A resolver is a pure function of the local and remote versions of a record.
It must be total and deterministic: background sync has no way to ask the
user, so the same inputs always produce the same decision.
"""

import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable, Protocol, Union

from ..store.models import Record

logger = logging.getLogger(__name__)

# Upper bound for merged list fields
MAX_MERGED_LIST_SIZE = 500


@dataclass(frozen=True)
class TakeLocal:
    """Keep the local version and push it again."""


@dataclass(frozen=True)
class TakeRemote:
    """Replace the local version with the remote one."""


@dataclass(frozen=True)
class Merge:
    """Use a record combined from both sides."""

    record: Record


Decision = Union[TakeLocal, TakeRemote, Merge]


class ConflictResolver(Protocol):
    """Anything that can decide between two versions of a record."""

    def resolve(self, local: Record, remote: Record) -> Decision: ...


class LastWriterWins:
    """Whole-record last-writer-wins on ``updated_at``.

    Ties compare ``(updated_at, id)`` and, when still equal, keep the remote
    version since the server is the authority.
    """

    def resolve(self, local: Record, remote: Record) -> Decision:
        local_key = (local.updated_at, local.id)
        remote_key = (remote.updated_at, remote.id)
        if local_key > remote_key:
            return TakeLocal()
        return TakeRemote()


def _canonical(item: Any) -> str:
    return json.dumps(item, sort_keys=True, default=str)


def union_lists(
    winner: list[Any], loser: list[Any], max_size: int = MAX_MERGED_LIST_SIZE
) -> list[Any]:
    """Union of two lists, winner's items first, without duplicates."""
    seen: set[str] = set()
    merged = []
    for item in [*winner, *loser]:
        key = _canonical(item)
        if key not in seen:
            seen.add(key)
            merged.append(item)

    if len(merged) > max_size:
        logger.warning(
            f"Merged list exceeded max size ({len(merged)} > {max_size}), truncating"
        )
        merged = merged[:max_size]
    return merged


class FieldMergeResolver:
    """Last-writer-wins with set-union of list-valued payload fields.

    The LWW winner provides every scalar field. For dict payloads, list
    fields present on both sides are unioned so additions made on either
    side survive. Non-dict payloads fall back to plain LWW.
    """

    def __init__(
        self,
        list_fields: Iterable[str] | None = None,
        max_list_size: int = MAX_MERGED_LIST_SIZE,
    ):
        """Initialize the resolver.

        Args:
            list_fields: Payload keys to merge. None merges every list field.
            max_list_size: Cap on the length of a merged list.
        """
        self.list_fields = set(list_fields) if list_fields is not None else None
        self.max_list_size = max_list_size
        self._lww = LastWriterWins()

    def resolve(self, local: Record, remote: Record) -> Decision:
        base = self._lww.resolve(local, remote)
        if not isinstance(local.payload, dict) or not isinstance(remote.payload, dict):
            return base
        if local.deleted or remote.deleted:
            return base

        winner, loser = (local, remote) if isinstance(base, TakeLocal) else (remote, local)
        payload = dict(winner.payload)
        changed = False

        for key, loser_val in loser.payload.items():
            if self.list_fields is not None and key not in self.list_fields:
                continue
            winner_val = payload.get(key)
            if not isinstance(loser_val, list) or not isinstance(winner_val, list):
                continue
            merged = union_lists(winner_val, loser_val, self.max_list_size)
            if merged != winner_val:
                payload[key] = merged
                changed = True

        if not changed:
            return base

        return Merge(
            replace(
                winner,
                payload=payload,
                version=max(local.version, remote.version),
                updated_at=max(local.updated_at, remote.updated_at),
            )
        )
