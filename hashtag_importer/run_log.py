from __future__ import annotations

import json
import traceback
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, TextIO

LEVELS: dict[str, int] = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}

_ERROR_MESSAGE_LIMIT = 2000
_TRACEBACK_LIMIT = 12000


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_level(level: str) -> str:
    lvl = (level or "").strip().upper() or "INFO"
    if lvl == "WARNING":
        lvl = "WARN"
    if lvl not in LEVELS:
        raise ValueError(f"unknown log level: {level!r}")
    return lvl


def _clip(text: str, limit: int) -> str:
    s = str(text or "")
    return s if len(s) <= limit else s[: limit - 1] + "…"


def describe_exception(exc: BaseException) -> dict[str, str]:
    return {
        "type": type(exc).__name__,
        "message": _clip(str(exc), _ERROR_MESSAGE_LIMIT),
        "traceback": _clip(
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            _TRACEBACK_LIMIT,
        ),
    }


class RunLogger:
    """
    JSON Lines event log for the importer process.

    Every record is one line: `ts`, `level`, `event`, `session_id`, the `run_id` once a
    run record exists, and the event fields under `data`. Records below `min_level` are
    skipped. The target is an already-open text stream; `open()` appends to a file and
    closes it with the logger, `to_stream()` leaves the stream to its owner.
    """

    def __init__(
        self,
        fp: TextIO,
        *,
        owns_fp: bool = False,
        min_level: str = "INFO",
        session_id: str | None = None,
    ) -> None:
        self._fp: TextIO | None = fp
        self._owns_fp = bool(owns_fp)
        self._threshold = LEVELS[normalize_level(min_level)]
        self._session_id = (session_id or "").strip() or uuid.uuid4().hex
        self._run_id: str | None = None
        self._lock = Lock()

    @classmethod
    def open(
        cls,
        path: str | Path,
        *,
        min_level: str = "INFO",
        session_id: str | None = None,
    ) -> "RunLogger":
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        fp = p.open("a", encoding="utf-8", newline="\n")
        return cls(fp, owns_fp=True, min_level=min_level, session_id=session_id)

    @classmethod
    def to_stream(
        cls,
        stream: TextIO,
        *,
        min_level: str = "INFO",
        session_id: str | None = None,
    ) -> "RunLogger":
        return cls(stream, min_level=min_level, session_id=session_id)

    def close(self) -> None:
        with self._lock:
            fp, self._fp = self._fp, None
            if fp is None:
                return
            fp.flush()
            if self._owns_fp:
                fp.close()

    def __enter__(self) -> "RunLogger":
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.close()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def run_id(self) -> str | None:
        return self._run_id

    def set_run_id(self, run_id: str) -> None:
        self._run_id = (run_id or "").strip() or self._run_id

    def enabled_for(self, level: str) -> bool:
        return LEVELS.get(normalize_level(level), 0) >= self._threshold

    def debug(self, event: str, **data: Any) -> None:
        self.log("DEBUG", event, **data)

    def info(self, event: str, **data: Any) -> None:
        self.log("INFO", event, **data)

    def warning(self, event: str, **data: Any) -> None:
        self.log("WARN", event, **data)

    def error(self, event: str, **data: Any) -> None:
        self.log("ERROR", event, **data)

    def exception(self, event: str, *, exc: BaseException, **data: Any) -> None:
        self.log("ERROR", event, error=describe_exception(exc), **data)

    def log(self, level: str, event: str, **data: Any) -> None:
        lvl = normalize_level(level)
        if LEVELS[lvl] < self._threshold:
            return

        record: dict[str, Any] = {
            "ts": _utc_now_iso(),
            "level": lvl,
            "event": (event or "").strip() or "event",
            "session_id": self._session_id,
        }
        if self._run_id:
            record["run_id"] = self._run_id
        if data:
            record["data"] = data

        line = json.dumps(
            record,
            ensure_ascii=False,
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )

        with self._lock:
            if self._fp is None:
                return
            self._fp.write(line + "\n")
            self._fp.flush()
