"""Session log uploader with resilient batching and idempotent state."""

__version__ = "0.1.0"

from sessync.models import Record, RecordMetadata, UploadConfig, UploadState, UploadSummary

__all__ = [
    "Record",
    "RecordMetadata",
    "UploadConfig",
    "UploadState",
    "UploadSummary",
    "__version__",
]
