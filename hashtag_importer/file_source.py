from __future__ import annotations

import itertools
import json
from pathlib import Path

from .errors import FatalError, TransientError
from .normalize import record_from_item
from .records import HashtagRecord
from .source import FetchResult, offset_position


class JsonLinesSource:
    """
    Network-free source reading one JSON object per line from a local file.

    The cursor is the number of lines already consumed. Lines that are not JSON objects
    become empty records so the normalizer counts them as dropped.
    """

    def __init__(self, path: str | Path, *, page_size: int) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._path = Path(path)
        self.page_size = int(page_size)

    def cursor_position(self, cursor: str | None) -> int:
        return offset_position(cursor)

    def fetch(self, cursor: str | None) -> FetchResult:
        offset = self.cursor_position(cursor)

        if not self._path.exists():
            raise FatalError(f"Source file not found: {self._path}", reason="missing_file")

        records: list[HashtagRecord] = []
        consumed = 0
        try:
            with self._path.open("r", encoding="utf-8") as fp:
                for line in itertools.islice(fp, offset, offset + self.page_size):
                    consumed += 1
                    text = line.strip()
                    if not text:
                        continue
                    source_id = f"line:{offset + consumed}"
                    try:
                        item = json.loads(text)
                    except json.JSONDecodeError:
                        records.append(HashtagRecord(tag="", source_id=source_id))
                        continue
                    if not isinstance(item, dict):
                        records.append(HashtagRecord(tag="", source_id=source_id))
                        continue
                    rec = record_from_item(item)
                    if rec.source_id is None:
                        rec = HashtagRecord(
                            tag=rec.tag,
                            metric=rec.metric,
                            observed_at=rec.observed_at,
                            source_id=source_id,
                        )
                    records.append(rec)
        except UnicodeDecodeError as e:
            raise FatalError(f"Source file is not valid UTF-8: {self._path}: {e}") from e
        except OSError as e:
            raise TransientError(
                f"Failed to read source file {self._path}: {e}", reason="io_error"
            ) from e

        if consumed == 0:
            return FetchResult(records=[], next_cursor=cursor, full_page=False)

        return FetchResult(
            records=records,
            next_cursor=str(offset + consumed),
            full_page=consumed >= self.page_size,
        )
