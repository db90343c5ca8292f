from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from .errors import CorruptCursorError, StaleCursorError, TransientError
from .records import CursorRecord
from .storage import SQLiteStateStore

DEFAULT_CURSOR_NAME = "default"


class CursorStore(Protocol):
    """
    Persists the resumption cursor with a version counter.

    `save` only succeeds when `expected_version` matches the persisted version, so a
    stale writer cannot overwrite a newer cursor. `reset` is the operator override.
    """

    def load(self) -> CursorRecord: ...

    def save(self, token: str | None, *, expected_version: int) -> CursorRecord: ...

    def reset(self, token: str | None = None) -> CursorRecord: ...


class SQLiteCursorStore:
    def __init__(self, store: SQLiteStateStore, *, name: str = DEFAULT_CURSOR_NAME) -> None:
        self._store = store
        self._name = (name or "").strip() or DEFAULT_CURSOR_NAME

    def load(self) -> CursorRecord:
        return self._store.load_cursor(self._name)

    def save(self, token: str | None, *, expected_version: int) -> CursorRecord:
        return self._store.save_cursor(self._name, token, expected_version=expected_version)

    def reset(self, token: str | None = None) -> CursorRecord:
        return self._store.save_cursor(self._name, token, expected_version=None)


class FileCursorStore:
    """
    Cursor kept in a small JSON document.

    Saves write a sibling temp file, fsync it, and rename it over the old document, so an
    interrupted save leaves the previous cursor intact.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> CursorRecord:
        if not self._path.exists():
            return CursorRecord()

        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise TransientError(
                f"Failed to read cursor file {self._path}: {e}", reason="io_error"
            ) from e

        try:
            data = json.loads(raw)
        except ValueError as e:
            raise CorruptCursorError(f"Cursor file {self._path} is not valid JSON") from e

        if not isinstance(data, dict):
            raise CorruptCursorError(f"Cursor file {self._path} must hold an object")

        token = data.get("token")
        version = data.get("version")
        if token is not None and not isinstance(token, str):
            raise CorruptCursorError(f"Cursor file {self._path} has a non-text token")
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise CorruptCursorError(f"Cursor file {self._path} has an invalid version")

        return CursorRecord(token=token, version=version)

    def save(self, token: str | None, *, expected_version: int) -> CursorRecord:
        current = self.load()
        if current.version != int(expected_version):
            raise StaleCursorError(
                f"Cursor file {self._path} is at version {current.version}, expected {expected_version}",
                reason="stale_writer",
            )
        return self._write(CursorRecord(token=token, version=current.version + 1))

    def reset(self, token: str | None = None) -> CursorRecord:
        try:
            version = self.load().version
        except CorruptCursorError:
            version = 0
        return self._write(CursorRecord(token=token, version=version + 1))

    def _write(self, record: CursorRecord) -> CursorRecord:
        payload = json.dumps(
            {
                "token": record.token,
                "version": record.version,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            },
            ensure_ascii=False,
            sort_keys=True,
        )

        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fp:
                fp.write(payload)
                fp.flush()
                os.fsync(fp.fileno())
            os.replace(tmp_name, self._path)
            tmp_name = None
            _fsync_dir(self._path.parent)
        except OSError as e:
            raise TransientError(
                f"Failed to write cursor file {self._path}: {e}", reason="io_error"
            ) from e
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

        return record


def _fsync_dir(path: Path) -> None:
    # Directory fsync makes the rename durable; not available on every platform.
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)
