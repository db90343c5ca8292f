from __future__ import annotations

import sqlite3
from datetime import datetime, timezone

SCHEMA_VERSION = 2


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initialize_sqlite(conn: sqlite3.Connection) -> None:
    """
    Initialize the SQLite database with a small migration system.

    This function is idempotent: it can be called on every startup.
    """
    _configure_connection(conn)
    _apply_migrations(conn)


def _configure_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA busy_timeout = 5000")

    # WAL is best-effort (e.g., in-memory DBs won't use it).
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = FULL")
    except sqlite3.DatabaseError:
        pass


_MIGRATIONS: dict[int, str] = {
    1: """
CREATE TABLE IF NOT EXISTS import_runs (
  run_id TEXT PRIMARY KEY,
  started_at TEXT NOT NULL,
  ended_at TEXT,
  config_hash TEXT NOT NULL,
  versions_json TEXT NOT NULL,
  status TEXT,
  summary_json TEXT
);

-- Timestamps are fixed-width UTC strings so MIN/MAX compare chronologically.
CREATE TABLE IF NOT EXISTS hashtags (
  tag TEXT PRIMARY KEY,
  metric INTEGER NOT NULL CHECK (metric >= 0),
  first_seen TEXT NOT NULL,
  last_seen TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_hashtags_last_seen
  ON hashtags(last_seen);

-- One row per batch already merged into hashtags; guards against double counting
-- when a batch is redelivered before its cursor was saved.
CREATE TABLE IF NOT EXISTS applied_batches (
  batch_key TEXT PRIMARY KEY,
  cursor TEXT,
  next_cursor TEXT,
  entity_count INTEGER NOT NULL,
  applied_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cursor_state (
  name TEXT PRIMARY KEY,
  token TEXT,
  version INTEGER NOT NULL,
  updated_at TEXT NOT NULL
);
""".strip(),
    2: """
-- Position a batch was fetched from, so a restart can find a batch whose cursor was
-- never saved. Rows written before this migration never match a live cursor version.
ALTER TABLE applied_batches ADD COLUMN stream TEXT NOT NULL DEFAULT 'default';
ALTER TABLE applied_batches ADD COLUMN cursor_version INTEGER NOT NULL DEFAULT -1;

CREATE INDEX IF NOT EXISTS idx_applied_batches_position
  ON applied_batches(stream, cursor_version);
""".strip(),
}


def _apply_migrations(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
        )

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    applied: set[int] = {int(r[0]) for r in rows}

    for version in range(1, SCHEMA_VERSION + 1):
        if version in applied:
            continue

        script = _MIGRATIONS.get(version)
        if not script:
            raise RuntimeError(f"Missing migration script for version={version}")

        with conn:
            conn.executescript(script)
            conn.execute(
                "INSERT INTO schema_migrations(version, applied_at) VALUES (?, ?)",
                (version, _utc_now_iso()),
            )
