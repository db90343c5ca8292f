from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from .errors import CorruptCursorError, FatalError, StaleCursorError, StorageError, TransientError
from .records import Batch, CursorRecord, HashtagEntity
from .storage_schema import initialize_sqlite

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_TRANSIENT_MARKERS = ("locked", "busy", "disk i/o", "unable to open")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_ts(dt: datetime) -> str:
    """Fixed-width UTC form, so string order matches time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(_TS_FORMAT)


def parse_ts(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


def _json_dumps(value: Any) -> str:
    return json.dumps(
        value,
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )


def classify_sqlite_error(exc: sqlite3.Error, *, context: str) -> Exception:
    """Lock contention and I/O trouble are transient; everything else is fatal."""
    msg = str(exc)
    if isinstance(exc, sqlite3.OperationalError) and any(
        m in msg.casefold() for m in _TRANSIENT_MARKERS
    ):
        return TransientError(f"{context}: {msg}", reason="store_unavailable")
    return FatalError(f"{context}: {msg}", reason="store_rejected")


@dataclass(frozen=True)
class RunRecord:
    run_id: str
    started_at: str
    ended_at: str | None
    config_hash: str
    versions: dict[str, str]
    status: str | None
    summary: dict[str, Any] | None


@dataclass(frozen=True)
class ApplyResult:
    applied: bool
    entity_count: int


class SQLiteStateStore:
    """
    SQLite persistence for imported hashtags, applied batches, cursors and run records.

    All writes happen inside explicit transactions; a batch is merged together with its
    batch key so a redelivered batch is recognized and skipped.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._conn.row_factory = sqlite3.Row

    @classmethod
    def open(cls, path: str | Path) -> "SQLiteStateStore":
        db_path = str(path)
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            conn = sqlite3.connect(db_path)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to open sqlite database: {db_path}: {e}") from e

        try:
            initialize_sqlite(conn)
        except Exception as e:
            conn.close()
            raise StorageError(f"Failed to initialize sqlite schema: {e}") from e

        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "SQLiteStateStore":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    def _begin(self) -> None:
        if self._conn.in_transaction:
            self._conn.rollback()
        self._conn.execute("BEGIN IMMEDIATE")

    def _rollback_quietly(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error:
            pass

    # Run records

    def create_run(
        self,
        *,
        config_hash: str,
        versions: Mapping[str, str] | None = None,
        run_id: str | None = None,
        started_at: str | None = None,
    ) -> RunRecord:
        rid = (run_id or uuid.uuid4().hex).strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        cfg_hash = (config_hash or "").strip()
        if not cfg_hash:
            raise ValueError("config_hash must be non-empty")

        start = (started_at or _utc_now_iso()).strip()
        versions_json = _json_dumps(dict(versions or {}))

        try:
            with self._conn:
                self._conn.execute(
                    """
                    INSERT OR IGNORE INTO import_runs(
                      run_id, started_at, ended_at, config_hash, versions_json, status, summary_json
                    ) VALUES (?, ?, NULL, ?, ?, NULL, NULL)
                    """.strip(),
                    (rid, start, cfg_hash, versions_json),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to create run record: {e}") from e

        record = self.get_run(rid)
        if record is None:
            raise StorageError("Failed to read run record after insert")
        return record

    def finish_run(
        self,
        run_id: str,
        *,
        status: str,
        summary: Mapping[str, Any] | None = None,
        ended_at: str | None = None,
    ) -> None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        end = (ended_at or _utc_now_iso()).strip()

        try:
            with self._conn:
                self._conn.execute(
                    "UPDATE import_runs SET ended_at = ?, status = ?, summary_json = ? WHERE run_id = ?",
                    (end, status, _json_dumps(dict(summary or {})), rid),
                )
        except sqlite3.DatabaseError as e:
            raise StorageError(f"Failed to finish run: {e}") from e

    def get_run(self, run_id: str) -> RunRecord | None:
        rid = (run_id or "").strip()
        if not rid:
            raise ValueError("run_id must be non-empty")

        row = self._conn.execute(
            "SELECT run_id, started_at, ended_at, config_hash, versions_json, status, summary_json FROM import_runs WHERE run_id = ?",
            (rid,),
        ).fetchone()
        if row is None:
            return None

        try:
            versions = json.loads(row["versions_json"] or "{}")
        except ValueError:
            versions = {}
        if not isinstance(versions, dict):
            versions = {}

        summary: dict[str, Any] | None = None
        if row["summary_json"]:
            try:
                loaded = json.loads(row["summary_json"])
            except ValueError:
                loaded = None
            summary = loaded if isinstance(loaded, dict) else None

        return RunRecord(
            run_id=str(row["run_id"]),
            started_at=str(row["started_at"]),
            ended_at=str(row["ended_at"]) if row["ended_at"] is not None else None,
            config_hash=str(row["config_hash"]),
            versions={str(k): str(v) for k, v in versions.items()},
            status=str(row["status"]) if row["status"] is not None else None,
            summary=summary,
        )

    # Hashtags

    def apply_batch(self, batch: Batch) -> ApplyResult:
        """
        Merge a batch into the hashtags table, once.

        Raises TransientError or FatalError; on error nothing from the batch is kept.
        """
        key = batch.batch_key
        now = format_ts(datetime.now(timezone.utc))
        rows = [
            (e.tag, int(e.metric), format_ts(e.first_seen), format_ts(e.last_seen), now)
            for e in batch.entities
        ]

        try:
            self._begin()
            seen = self._conn.execute(
                "SELECT 1 FROM applied_batches WHERE batch_key = ?",
                (key,),
            ).fetchone()
            if seen is not None:
                self._conn.rollback()
                return ApplyResult(applied=False, entity_count=len(rows))

            self._conn.executemany(
                """
                INSERT INTO hashtags(tag, metric, first_seen, last_seen, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tag) DO UPDATE SET
                  metric = hashtags.metric + excluded.metric,
                  first_seen = MIN(hashtags.first_seen, excluded.first_seen),
                  last_seen = MAX(hashtags.last_seen, excluded.last_seen),
                  updated_at = excluded.updated_at
                """.strip(),
                rows,
            )
            self._conn.execute(
                """
                INSERT INTO applied_batches(
                  batch_key, stream, cursor, cursor_version, next_cursor, entity_count, applied_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """.strip(),
                (
                    key,
                    batch.stream,
                    batch.cursor,
                    int(batch.cursor_version),
                    batch.next_cursor,
                    len(rows),
                    now,
                ),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._rollback_quietly()
            raise classify_sqlite_error(e, context="Failed to write hashtag batch") from e
        except OverflowError as e:
            self._rollback_quietly()
            raise FatalError(
                f"Failed to write hashtag batch: metric outside the 64-bit integer range: {e}",
                reason="store_rejected",
            ) from e

        return ApplyResult(applied=True, entity_count=len(rows))

    def applied_next_cursor(
        self, stream: str, cursor: str | None, cursor_version: int
    ) -> str | None:
        """
        Cursor that follows an already-applied batch fetched from `cursor`.

        Returns None when no batch was applied from that position. A hit means the
        process stopped after the write but before the cursor was saved.
        """
        try:
            row = self._conn.execute(
                """
                SELECT next_cursor FROM applied_batches
                WHERE stream = ? AND cursor IS ? AND cursor_version = ?
                ORDER BY rowid DESC
                LIMIT 1
                """.strip(),
                (stream, cursor, int(cursor_version)),
            ).fetchone()
        except sqlite3.Error as e:
            raise classify_sqlite_error(e, context="Failed to read applied batches") from e

        if row is None:
            return None
        return row["next_cursor"]

    def get_hashtag(self, tag: str) -> HashtagEntity | None:
        row = self._conn.execute(
            "SELECT tag, metric, first_seen, last_seen FROM hashtags WHERE tag = ?",
            (tag,),
        ).fetchone()
        if row is None:
            return None
        return _entity_from_row(row)

    def hashtags(self, *, limit: int | None = None) -> list[HashtagEntity]:
        if limit is not None and limit <= 0:
            return []

        sql = "SELECT tag, metric, first_seen, last_seen FROM hashtags ORDER BY tag"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)

        return [_entity_from_row(r) for r in self._conn.execute(sql, params).fetchall()]

    def hashtag_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(1) AS n FROM hashtags").fetchone()
        return int(row["n"]) if row is not None else 0

    def applied_batch_count(self) -> int:
        row = self._conn.execute("SELECT COUNT(1) AS n FROM applied_batches").fetchone()
        return int(row["n"]) if row is not None else 0

    # Cursors

    def load_cursor(self, name: str) -> CursorRecord:
        try:
            row = self._conn.execute(
                "SELECT token, version FROM cursor_state WHERE name = ?",
                (name,),
            ).fetchone()
        except sqlite3.Error as e:
            raise classify_sqlite_error(e, context="Failed to load cursor") from e

        if row is None:
            return CursorRecord()

        token = row["token"]
        version = row["version"]
        if token is not None and not isinstance(token, str):
            raise CorruptCursorError(f"Persisted cursor {name!r} has a non-text token")
        if not isinstance(version, int) or version < 0:
            raise CorruptCursorError(f"Persisted cursor {name!r} has an invalid version")

        return CursorRecord(token=token, version=version)

    def save_cursor(
        self,
        name: str,
        token: str | None,
        *,
        expected_version: int | None,
    ) -> CursorRecord:
        """
        Store a new cursor token, bumping the version.

        With expected_version set, the save only succeeds when the persisted version still
        matches; otherwise StaleCursorError is raised and nothing changes.
        """
        try:
            self._begin()
            row = self._conn.execute(
                "SELECT version FROM cursor_state WHERE name = ?",
                (name,),
            ).fetchone()
            current = int(row["version"]) if row is not None else 0

            if expected_version is not None and current != int(expected_version):
                self._conn.rollback()
                raise StaleCursorError(
                    f"Cursor {name!r} is at version {current}, expected {expected_version}",
                    reason="stale_writer",
                )

            new_version = current + 1
            self._conn.execute(
                """
                INSERT INTO cursor_state(name, token, version, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                  token = excluded.token,
                  version = excluded.version,
                  updated_at = excluded.updated_at
                """.strip(),
                (name, token, new_version, _utc_now_iso()),
            )
            self._conn.commit()
        except sqlite3.Error as e:
            self._rollback_quietly()
            raise classify_sqlite_error(e, context="Failed to save cursor") from e

        return CursorRecord(token=token, version=new_version)


def _entity_from_row(row: sqlite3.Row) -> HashtagEntity:
    return HashtagEntity(
        tag=str(row["tag"]),
        metric=int(row["metric"]),
        first_seen=parse_ts(str(row["first_seen"])),
        last_seen=parse_ts(str(row["last_seen"])),
    )
