"""Resilient batch upload pipeline for session log records.

Public API
----------
.. autoclass:: UploadOrchestrator
.. autoclass:: ResilientBatchUploader
.. autoclass:: SingleSinkBatchUploader
.. autoclass:: BigQuerySinkFactory
.. autoclass:: JsonStateStore
.. autoclass:: SqliteStateStore
.. autoclass:: ErrorKind
"""

from sessync.upload.batch_uploader import (
    ResilientBatchUploader,
    SingleSinkBatchUploader,
    partition,
)
from sessync.upload.classifier import ErrorKind, classify, error_chain_to_string
from sessync.upload.exceptions import (
    BatchTooLargeError,
    ConfigError,
    ConnectionResetsExceededError,
    FatalUploadError,
    RecordSourceError,
    RetriesExhaustedError,
    SessyncError,
    SinkCreationError,
    StateStoreError,
    UploadError,
)
from sessync.upload.orchestrator import UploadOrchestrator
from sessync.upload.retry import calculate_retry_delay
from sessync.upload.sink import Destination, InsertOutcome, RowError, Sink, SinkFactory
from sessync.upload.state import JsonStateStore, SqliteStateStore, StateStore

__all__ = [
    "BatchTooLargeError",
    "ConfigError",
    "ConnectionResetsExceededError",
    "Destination",
    "ErrorKind",
    "FatalUploadError",
    "InsertOutcome",
    "JsonStateStore",
    "RecordSourceError",
    "ResilientBatchUploader",
    "RetriesExhaustedError",
    "RowError",
    "SessyncError",
    "SingleSinkBatchUploader",
    "Sink",
    "SinkCreationError",
    "SinkFactory",
    "SqliteStateStore",
    "StateStore",
    "StateStoreError",
    "UploadError",
    "UploadOrchestrator",
    "calculate_retry_delay",
    "classify",
    "error_chain_to_string",
    "partition",
]
