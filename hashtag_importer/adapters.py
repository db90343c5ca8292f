from __future__ import annotations

from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path

from .config import RuntimeSecrets
from .config_schema import AppConfig, CursorConfig, SourceConfig
from .cursor_store import CursorStore, FileCursorStore, SQLiteCursorStore
from .health import HealthController
from .sink import InMemorySink, SinkWriter, SQLiteSink
from .source import SourceClient
from .storage import SQLiteStateStore


@dataclass(frozen=True)
class Components:
    source: SourceClient
    sink: SinkWriter
    cursor_store: CursorStore
    store: SQLiteStateStore | None


def build_source(
    cfg: SourceConfig,
    secrets: RuntimeSecrets,
    *,
    health: HealthController | None = None,
) -> SourceClient:
    """Source for `cfg`; with `health`, rate-limit waits end early on shutdown."""
    if cfg.kind == "mastodon":
        from .mastodon_source import MastodonHashtagSource
        from .rate_limit import RateLimiter

        return MastodonHashtagSource(
            cfg.endpoint or "",
            cfg.hashtag or "",
            token=secrets.source_token,
            any_hashtags=cfg.any_hashtags,
            page_size=cfg.page_size,
            rate_limiter=RateLimiter(
                cfg.requests_per_minute,
                sleep_fn=health.wait if health is not None else None,
            ),
        )

    if cfg.kind == "apify":
        from .apify_source import ApifyDatasetSource

        return ApifyDatasetSource(
            secrets.source_token or "",
            cfg.dataset_id or "",
            page_size=cfg.page_size,
        )

    from .file_source import JsonLinesSource

    return JsonLinesSource(cfg.path or "", page_size=cfg.page_size)


def _same_path(a: str, b: str) -> bool:
    if a == ":memory:" or b == ":memory:":
        return a == b
    return Path(a).resolve() == Path(b).resolve()


def open_cursor_store(
    cfg: CursorConfig,
    stack: ExitStack,
    *,
    sink_store: SQLiteStateStore | None = None,
    sink_path: str | None = None,
) -> CursorStore:
    if cfg.kind == "file":
        return FileCursorStore(cfg.path or "")

    db_path = cfg.path or sink_path
    if db_path is None:
        raise ValueError("cursor database path is not configured")

    if sink_store is not None and sink_path is not None and _same_path(db_path, sink_path):
        return SQLiteCursorStore(sink_store, name=cfg.name)

    store = stack.enter_context(SQLiteStateStore.open(db_path))
    return SQLiteCursorStore(store, name=cfg.name)


def open_components(
    config: AppConfig,
    secrets: RuntimeSecrets,
    stack: ExitStack,
    *,
    health: HealthController | None = None,
) -> Components:
    """
    Build the adapters selected by configuration.

    SQLite stores are registered on `stack` so the caller controls their lifetime.
    """
    source = build_source(config.source, secrets, health=health)

    store: SQLiteStateStore | None = None
    sink: SinkWriter
    if config.sink.kind == "sqlite":
        store = stack.enter_context(SQLiteStateStore.open(config.sink.path))
        sink = SQLiteSink(store)
    else:
        sink = InMemorySink()

    cursor_store = open_cursor_store(
        config.cursor,
        stack,
        sink_store=store,
        sink_path=config.sink.path if config.sink.kind == "sqlite" else None,
    )

    return Components(source=source, sink=sink, cursor_store=cursor_store, store=store)
