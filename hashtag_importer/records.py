from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Sequence


@dataclass(frozen=True)
class HashtagRecord:
    """A raw hashtag observation as received from a source."""

    tag: str
    metric: object = 1
    observed_at: object = None
    source_id: str | None = None


@dataclass(frozen=True)
class HashtagEntity:
    """A canonical hashtag with its aggregated metric."""

    tag: str
    metric: int
    first_seen: datetime
    last_seen: datetime


@dataclass(frozen=True)
class Batch:
    entities: Sequence[HashtagEntity]
    cursor: str | None
    next_cursor: str | None
    cursor_version: int = 0
    stream: str = "default"

    @property
    def batch_key(self) -> str:
        """
        Stable identity of this batch, used by sinks to recognize redelivery.

        Derived from the stream, the cursor position it was fetched from and the tag
        counts. Timestamps are left out: records without one are stamped with the fetch
        time, which differs between the original delivery and a re-fetch.
        """
        payload = json.dumps(
            {
                "stream": self.stream,
                "cursor": self.cursor,
                "cursor_version": self.cursor_version,
                "next_cursor": self.next_cursor,
                "entities": [[e.tag, e.metric] for e in self.entities],
            },
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
        ).encode("utf-8")
        return hashlib.sha256(payload).hexdigest()


@dataclass(frozen=True)
class CursorRecord:
    token: str | None = None
    version: int = 0


@dataclass(frozen=True)
class ImportState:
    """
    Process-wide import progress.

    Treated as a value: each pump cycle takes the current state and returns a new one.
    """

    cursor: str | None = None
    cursor_version: int = 0
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    cycles: int = 0
    records_fetched: int = 0
    entities_written: int = 0
    dropped: int = 0
    drop_reasons: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_cursor(cls, record: CursorRecord) -> "ImportState":
        return cls(cursor=record.token, cursor_version=record.version)

    def evolve(self, **changes: object) -> "ImportState":
        return replace(self, **changes)  # type: ignore[arg-type]
