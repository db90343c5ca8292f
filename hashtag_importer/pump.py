from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping

from .backoff import Backoff, BackoffPolicy, UniformFn
from .cursor_store import CursorStore
from .errors import FatalError, StaleCursorError, TransientError
from .health import HealthController
from .normalize import normalize
from .records import Batch, ImportState
from .run_log import RunLogger
from .sink import SinkWriter
from .source import SourceClient

WaitFn = Callable[[float], bool]
NowFn = Callable[[], datetime]

STATUS_SHUTDOWN = "shutdown"
STATUS_FATAL = "halted_fatal"


class PumpState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    NORMALIZING = "normalizing"
    WRITING = "writing"
    COMMITTING = "committing"
    BACKOFF = "backoff"
    HALTED = "halted"


@dataclass(frozen=True)
class WrittenBatch:
    """A batch that is durable in the sink but whose cursor is not saved yet."""

    next_cursor: str | None
    full_page: bool
    records: int
    entities: int
    dropped: int
    drop_reasons: Mapping[str, int]
    exhausted: bool = False


@dataclass(frozen=True)
class PumpResult:
    status: str
    state: ImportState
    error: str | None = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _merge_reasons(a: Mapping[str, int], b: Mapping[str, int]) -> dict[str, int]:
    merged: Counter[str] = Counter(a)
    merged.update(b)
    return dict(merged)


class Pump:
    """
    Drives fetch -> normalize -> write -> commit, one cycle at a time.

    The pump is the only place that decides between retrying (TransientError, with
    backoff) and halting (FatalError or shutdown). The cursor advances only after the
    sink confirmed the batch. Waiting goes through `wait_fn`, which returns True when
    the wait was cut short by a shutdown request.
    """

    def __init__(
        self,
        source: SourceClient,
        sink: SinkWriter,
        cursor_store: CursorStore,
        *,
        policy: BackoffPolicy | None = None,
        cycle_interval_seconds: float = 300.0,
        max_consecutive_failures: int = 0,
        health: HealthController | None = None,
        logger: RunLogger | None = None,
        wait_fn: WaitFn | None = None,
        now_fn: NowFn | None = None,
        uniform: UniformFn | None = None,
        stream: str = "default",
    ) -> None:
        if cycle_interval_seconds < 0:
            raise ValueError("cycle_interval_seconds must be >= 0")
        if max_consecutive_failures < 0:
            raise ValueError("max_consecutive_failures must be >= 0")

        self._source = source
        self._sink = sink
        self._cursors = cursor_store
        self._backoff = Backoff(policy or BackoffPolicy(), uniform=uniform)
        self._interval = float(cycle_interval_seconds)
        self._max_failures = int(max_consecutive_failures)
        self._health = health or HealthController()
        self._log = logger
        self._now = now_fn or _utc_now
        self._wait = wait_fn or self._health.wait
        self._stream = (stream or "").strip() or "default"
        self._state_name = PumpState.IDLE

    @property
    def state_name(self) -> PumpState:
        return self._state_name

    @property
    def health(self) -> HealthController:
        return self._health

    def _emit(self, level: str, event: str, **data: Any) -> None:
        if self._log is not None:
            self._log.log(level, event, **data)

    def _enter(self, name: PumpState, state: ImportState | None) -> None:
        self._state_name = name
        snapshot: dict[str, Any] = {"state": name.value}
        if state is not None:
            snapshot.update(
                cursor=state.cursor,
                cursor_version=state.cursor_version,
                cycles=state.cycles,
                consecutive_failures=state.consecutive_failures,
                last_success_at=state.last_success_at.isoformat() if state.last_success_at else None,
            )
        self._health.publish(snapshot)

    def load_state(self) -> ImportState:
        """
        Load the persisted cursor, first finishing a batch the sink already applied.

        A batch applied from the persisted cursor and version means the previous process
        stopped between the write and the cursor save; its `next_cursor` is saved now
        instead of fetching and writing the page again.
        """
        record = self._cursors.load()
        self._emit("INFO", "cursor_loaded", cursor=record.token, version=record.version)

        resumed = self._sink.applied_next_cursor(self._stream, record.token, record.version)
        if resumed is not None and resumed != record.token:
            record = self._cursors.save(resumed, expected_version=record.version)
            self._emit("WARN", "applied_batch_recovered", cursor=record.token, version=record.version)

        state = ImportState.from_cursor(record)
        self._health.mark_ready()
        return state

    def fetch_and_write(self, state: ImportState) -> WrittenBatch:
        """Fetch one page from the current cursor, normalize it and hand it to the sink."""
        self._enter(PumpState.FETCHING, state)
        fetched_at = self._now()
        page = self._source.fetch(state.cursor)

        next_cursor = page.next_cursor
        if next_cursor != state.cursor:
            if next_cursor is None or self._source.cursor_position(
                next_cursor
            ) < self._source.cursor_position(state.cursor):
                raise FatalError(
                    f"Source returned cursor {next_cursor!r} behind current cursor {state.cursor!r}",
                    reason="cursor_regression",
                )

        self._emit(
            "INFO",
            "batch_fetched",
            cursor=state.cursor,
            next_cursor=next_cursor,
            records=len(page.records),
            full_page=page.full_page,
        )

        if self._health.shutdown_requested:
            # Nothing written yet; the page will be fetched again after restart.
            raise _ShutdownRequested()

        self._enter(PumpState.NORMALIZING, state)
        result = normalize(page.records, default_observed_at=fetched_at)
        if result.dropped:
            self._emit(
                "WARN",
                "batch_normalized",
                entities=len(result.entities),
                dropped=result.dropped,
                drop_reasons=dict(result.drop_reasons),
            )
        else:
            self._emit("INFO", "batch_normalized", entities=len(result.entities), dropped=0)

        if self._health.shutdown_requested:
            raise _ShutdownRequested()

        written_entities = 0
        if result.entities:
            self._enter(PumpState.WRITING, state)
            batch = Batch(
                entities=result.entities,
                cursor=state.cursor,
                next_cursor=next_cursor,
                cursor_version=state.cursor_version,
                stream=self._stream,
            )
            write = self._sink.write(batch)
            if not write.committed:
                raise TransientError("Sink did not confirm the batch", reason="not_committed")
            written_entities = write.entities
            self._emit(
                "INFO",
                "batch_written",
                entities=write.entities,
                already_applied=write.already_applied,
                batch_key=batch.batch_key,
            )

        return WrittenBatch(
            next_cursor=next_cursor,
            full_page=page.full_page,
            records=len(page.records),
            entities=written_entities,
            dropped=result.dropped,
            drop_reasons=dict(result.drop_reasons),
            exhausted=page.exhausted(state.cursor),
        )

    def commit(self, state: ImportState, written: WrittenBatch) -> ImportState:
        """Persist the cursor for a written batch and fold its counts into the state."""
        self._enter(PumpState.COMMITTING, state)

        version = state.cursor_version
        if written.next_cursor != state.cursor:
            saved = self._cursors.save(written.next_cursor, expected_version=state.cursor_version)
            version = saved.version
            self._emit("INFO", "cursor_saved", cursor=saved.token, version=saved.version)

        return state.evolve(
            cursor=written.next_cursor,
            cursor_version=version,
            consecutive_failures=0,
            last_success_at=self._now(),
            cycles=state.cycles + 1,
            records_fetched=state.records_fetched + written.records,
            entities_written=state.entities_written + written.entities,
            dropped=state.dropped + written.dropped,
            drop_reasons=_merge_reasons(state.drop_reasons, written.drop_reasons),
        )

    def run_cycle(self, state: ImportState) -> tuple[ImportState, WrittenBatch]:
        written = self.fetch_and_write(state)
        return self.commit(state, written), written

    def run(self, state: ImportState | None = None) -> PumpResult:
        """Run cycles until shutdown or a fatal error. Never raises Transient/Fatal errors."""
        pending: WrittenBatch | None = None
        failures = 0

        while True:
            if self._health.shutdown_requested:
                return self._halt(state, pending, status=STATUS_SHUTDOWN)

            try:
                if state is None:
                    state = self.load_state()

                self._emit("DEBUG", "cycle_started", cursor=state.cursor, retry_commit=pending is not None)
                if pending is None:
                    pending = self.fetch_and_write(state)
                written = pending
                state = self.commit(state, written)
                pending = None
                failures = 0
                self._backoff.reset()
            except _ShutdownRequested:
                return self._halt(state, pending, status=STATUS_SHUTDOWN)
            except TransientError as e:
                if self._health.shutdown_requested:
                    return self._halt(state, pending, status=STATUS_SHUTDOWN)

                failures += 1
                if state is not None:
                    state = state.evolve(consecutive_failures=failures)

                if self._max_failures and failures >= self._max_failures:
                    escalated = FatalError(
                        f"Giving up after {failures} consecutive transient failures: {e}",
                        reason="retries_exhausted",
                    )
                    return self._halt(state, pending, status=STATUS_FATAL, error=escalated)

                delay = self._backoff.next_delay(retry_after_seconds=e.retry_after_seconds)
                self._enter(PumpState.BACKOFF, state)
                self._emit(
                    "WARN",
                    "backoff_scheduled",
                    failure=failures,
                    delay_seconds=delay,
                    reason=e.reason,
                    error_type=type(e).__name__,
                    error_message=str(e),
                    retry_commit=pending is not None,
                )
                if self._wait(delay):
                    return self._halt(state, pending, status=STATUS_SHUTDOWN)
                continue
            except FatalError as e:
                return self._halt(state, pending, status=STATUS_FATAL, error=e)

            if written.full_page:
                # Backlog: go straight to the next fetch.
                continue

            if written.exhausted:
                self._emit("INFO", "source_exhausted", cursor=state.cursor)

            self._enter(PumpState.IDLE, state)
            if self._wait(self._interval):
                return self._halt(state, None, status=STATUS_SHUTDOWN)

    def _halt(
        self,
        state: ImportState | None,
        pending: WrittenBatch | None,
        *,
        status: str,
        error: FatalError | None = None,
    ) -> PumpResult:
        final = state or ImportState()

        if pending is not None and state is not None and not isinstance(error, StaleCursorError):
            # The sink already has this batch; saving its cursor avoids a redundant re-fetch.
            try:
                final = self.commit(state, pending)
            except (TransientError, FatalError) as e:
                self._emit("WARN", "final_cursor_save_failed", error_type=type(e).__name__, error_message=str(e))

        self._enter(PumpState.HALTED, final)
        self._health.mark_halted()

        if status == STATUS_SHUTDOWN:
            self._emit("INFO", "shutdown_requested", reason=self._health.shutdown_reason)

        message = str(error) if error is not None else None
        self._emit(
            "ERROR" if error is not None else "INFO",
            "pump_halted",
            status=status,
            cursor=final.cursor,
            cycles=final.cycles,
            records_fetched=final.records_fetched,
            entities_written=final.entities_written,
            dropped=final.dropped,
            error_type=type(error).__name__ if error is not None else None,
            error_message=message,
            reason=getattr(error, "reason", None),
        )
        return PumpResult(status=status, state=final, error=message)


class _ShutdownRequested(Exception):
    pass

