"""Exception hierarchy for the upload pipeline."""

from __future__ import annotations


class SessyncError(Exception):
    """Base class for all sessync errors."""


class ConfigError(SessyncError):
    """Raised when the configuration file is missing, malformed or invalid."""


class StateStoreError(SessyncError):
    """Raised when persisted upload state cannot be read or written."""


class UploadError(SessyncError):
    """A chunk could not be delivered. Aborts the whole run.

    Attributes:
        batch_index: 1-based index of the top-level batch being uploaded.
        transient_retries: Transient retries spent on the failing attempt.
        connection_resets: Connection resets spent on the failing attempt.
    """

    def __init__(
        self,
        message: str,
        *,
        batch_index: int | None = None,
        transient_retries: int = 0,
        connection_resets: int = 0,
    ) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.transient_retries = transient_retries
        self.connection_resets = connection_resets

    def __str__(self) -> str:
        base = super().__str__()
        if self.batch_index is None:
            return base
        return (
            f"{base} (batch {self.batch_index}, "
            f"retries={self.transient_retries}, "
            f"connection_resets={self.connection_resets})"
        )


class FatalUploadError(UploadError):
    """The sink rejected the request with a non-retryable error."""


class BatchTooLargeError(UploadError):
    """The sink rejected a chunk as too large even at the minimum split size."""


class RetriesExhaustedError(UploadError):
    """Transient errors persisted beyond ``max_retries``."""


class ConnectionResetsExceededError(UploadError):
    """Connection-level errors persisted beyond ``max_connection_resets``."""


class SinkCreationError(UploadError):
    """The sink factory could not establish a connection."""


class RecordSourceError(SessyncError):
    """A records file could not be read or contained an invalid line."""
