from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from .errors import CorruptCursorError
from .records import HashtagRecord


@dataclass(frozen=True)
class FetchResult:
    """
    One page of raw records.

    `full_page` is True when the source returned as many upstream items as it was asked
    for, meaning more data is probably waiting.
    """

    records: Sequence[HashtagRecord]
    next_cursor: str | None
    full_page: bool = False

    def exhausted(self, cursor: str | None) -> bool:
        return not self.records and self.next_cursor == cursor


class SourceClient(Protocol):
    """
    Upstream adapter: pull records "since cursor", return them and the new cursor.

    Implementations raise TransientError or FatalError and never mutate shared state.
    """

    page_size: int

    def fetch(self, cursor: str | None) -> FetchResult: ...

    def cursor_position(self, cursor: str | None) -> Any: ...


def offset_position(cursor: str | None) -> int:
    """Sortable position for offset-style cursors; None is the start."""
    if cursor is None:
        return 0
    try:
        value = int(str(cursor).strip())
    except ValueError as e:
        raise CorruptCursorError(f"Offset cursor is not an integer: {cursor!r}") from e
    if value < 0:
        raise CorruptCursorError(f"Offset cursor is negative: {cursor!r}")
    return value
