from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from .records import Batch, HashtagEntity
from .storage import SQLiteStateStore


@dataclass(frozen=True)
class WriteResult:
    committed: bool
    entities: int
    already_applied: bool = False


class SinkWriter(Protocol):
    """
    Downstream adapter: durably upsert a batch keyed by canonical tag.

    Must return only once the whole batch is durable, and must treat a redelivered
    batch (same batch_key) as already applied. Raises TransientError or FatalError.

    `applied_next_cursor` reports the `next_cursor` of a batch already applied from the
    given stream position, or None when there is none.
    """

    def write(self, batch: Batch) -> WriteResult: ...

    def applied_next_cursor(
        self, stream: str, cursor: str | None, cursor_version: int
    ) -> str | None: ...


class SQLiteSink:
    def __init__(self, store: SQLiteStateStore) -> None:
        self._store = store

    def write(self, batch: Batch) -> WriteResult:
        result = self._store.apply_batch(batch)
        return WriteResult(
            committed=True,
            entities=result.entity_count,
            already_applied=not result.applied,
        )

    def applied_next_cursor(
        self, stream: str, cursor: str | None, cursor_version: int
    ) -> str | None:
        return self._store.applied_next_cursor(stream, cursor, cursor_version)


class InMemorySink:
    """Process-local sink with the same upsert and redelivery semantics as SQLiteSink."""

    def __init__(self) -> None:
        self.entities: dict[str, HashtagEntity] = {}
        self.applied_keys: set[str] = set()
        self._positions: dict[tuple[str, str | None, int], str | None] = {}

    def write(self, batch: Batch) -> WriteResult:
        key = batch.batch_key
        if key in self.applied_keys:
            return WriteResult(committed=True, entities=len(batch.entities), already_applied=True)

        merged = dict(self.entities)
        for e in batch.entities:
            prev = merged.get(e.tag)
            if prev is None:
                merged[e.tag] = e
                continue
            merged[e.tag] = HashtagEntity(
                tag=e.tag,
                metric=prev.metric + e.metric,
                first_seen=min(prev.first_seen, e.first_seen),
                last_seen=max(prev.last_seen, e.last_seen),
            )

        self.entities = merged
        self.applied_keys.add(key)
        self._positions[(batch.stream, batch.cursor, batch.cursor_version)] = batch.next_cursor
        return WriteResult(committed=True, entities=len(batch.entities))

    def applied_next_cursor(
        self, stream: str, cursor: str | None, cursor_version: int
    ) -> str | None:
        return self._positions.get((stream, cursor, cursor_version))
