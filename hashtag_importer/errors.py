from __future__ import annotations


class ConfigError(RuntimeError):
    """Raised when configuration is missing or invalid."""


class StorageError(RuntimeError):
    """Raised when opening or migrating the SQLite database fails."""


class TransientError(RuntimeError):
    """
    Raised by a source, sink or cursor store for failures worth retrying.

    `reason` is a short machine-readable tag (e.g. "http_503", "network_error").
    `retry_after_seconds` carries a server hint when one was given.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: str | None = None,
        retry_after_seconds: float | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds


class FatalError(RuntimeError):
    """Raised for failures that must halt the importer (auth, schema, corrupted state)."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class StaleCursorError(FatalError):
    """Raised when a cursor save loses a version race against another writer."""


class CorruptCursorError(FatalError):
    """Raised when a persisted cursor cannot be decoded."""
