"""Data models for the session log upload pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence

from sessync.constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_STATE_PATH,
    INITIAL_RETRY_DELAY_MS,
    INTER_BATCH_DELAY_MS,
    MAX_CONNECTION_RESETS,
    MAX_RETRIES,
    MAX_RETRY_DELAY_MS,
    MIN_SPLIT_SIZE,
)


@dataclass(frozen=True, slots=True)
class RecordMetadata:
    """Provenance attached to every record at upload time."""

    developer_id: str = ""
    hostname: str = ""
    user_email: str = ""
    project_name: str = ""
    source_file: str = ""
    upload_batch_id: str = ""
    uploaded_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class Record:
    """One loggable unit. ``id`` doubles as dedup key and sink insert id."""

    id: str
    payload: dict[str, Any] = field(default_factory=dict)
    metadata: RecordMetadata = field(default_factory=RecordMetadata)

    def to_row(self) -> dict[str, Any]:
        """Flatten payload and provenance into the row sent to the sink."""
        row: dict[str, Any] = dict(self.payload)
        row["uuid"] = self.id
        row["developer_id"] = self.metadata.developer_id
        row["hostname"] = self.metadata.hostname
        row["user_email"] = self.metadata.user_email
        row["project_name"] = self.metadata.project_name
        row["source_file"] = self.metadata.source_file
        row["upload_batch_id"] = self.metadata.upload_batch_id
        row["uploaded_at"] = (
            self.metadata.uploaded_at.isoformat()
            if self.metadata.uploaded_at is not None
            else None
        )
        return row


@dataclass
class UploadState:
    """Durable record of previously uploaded ids.

    ``uploaded_ids`` only grows during normal operation and
    ``total_uploaded`` never decreases.
    """

    last_upload_timestamp: str | None = None
    uploaded_ids: set[str] = field(default_factory=set)
    last_batch_id: str | None = None
    total_uploaded: int = 0

    def is_uploaded(self, record_id: str) -> bool:
        return record_id in self.uploaded_ids

    def merge(self, ids: Iterable[str], batch_id: str, timestamp: str) -> int:
        """Union *ids* into the state and return how many were new."""
        before = len(self.uploaded_ids)
        self.uploaded_ids.update(ids)
        added = len(self.uploaded_ids) - before
        self.total_uploaded += added
        self.last_batch_id = batch_id
        self.last_upload_timestamp = timestamp
        return added

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_upload_timestamp": self.last_upload_timestamp,
            "uploaded_uuids": sorted(self.uploaded_ids),
            "last_upload_batch_id": self.last_batch_id,
            "total_uploaded": self.total_uploaded,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadState:
        return cls(
            last_upload_timestamp=data.get("last_upload_timestamp"),
            uploaded_ids=set(data.get("uploaded_uuids") or ()),
            last_batch_id=data.get("last_upload_batch_id"),
            total_uploaded=int(data.get("total_uploaded") or 0),
        )


@dataclass
class UploadResult:
    """Outcome of one chunk."""

    uploaded_count: int = 0
    failed_count: int = 0
    uploaded_ids: list[str] = field(default_factory=list)

    @classmethod
    def for_chunk(
        cls, chunk: Sequence[Record], credited_ids: list[str]
    ) -> UploadResult:
        return cls(
            uploaded_count=len(credited_ids),
            failed_count=len(chunk) - len(credited_ids),
            uploaded_ids=credited_ids,
        )


@dataclass
class UploadSummary:
    """Run-level aggregate of every chunk's :class:`UploadResult`."""

    uploaded_count: int = 0
    failed_count: int = 0
    uploaded_ids: list[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> UploadSummary:
        return cls()

    def add(self, result: UploadResult) -> None:
        self.uploaded_count += result.uploaded_count
        self.failed_count += result.failed_count
        self.uploaded_ids.extend(result.uploaded_ids)


@dataclass
class RetryContext:
    """Counters local to a single chunk attempt. Never shared."""

    transient_retry_count: int = 0
    connection_reset_count: int = 0


@dataclass(frozen=True)
class RetryLimits:
    """Retry, backoff and splitting limits consumed by the uploaders."""

    max_retries: int = MAX_RETRIES
    max_connection_resets: int = MAX_CONNECTION_RESETS
    initial_retry_delay_ms: int = INITIAL_RETRY_DELAY_MS
    max_retry_delay_ms: int = MAX_RETRY_DELAY_MS
    inter_batch_delay_ms: int = INTER_BATCH_DELAY_MS
    min_split_size: int = MIN_SPLIT_SIZE


@dataclass
class UploadConfig:
    """Configuration for the BigQuery upload pipeline.

    Controls the sink target, batching, deduplication, retry budgets
    and the provenance stamped onto each record.
    """

    project_id: str = ""
    dataset: str = ""
    table: str = ""
    location: str = "US"
    batch_size: int = DEFAULT_BATCH_SIZE
    enable_deduplication: bool = True
    max_retries: int = MAX_RETRIES
    max_connection_resets: int = MAX_CONNECTION_RESETS
    initial_retry_delay_ms: int = INITIAL_RETRY_DELAY_MS
    max_retry_delay_ms: int = MAX_RETRY_DELAY_MS
    inter_batch_delay_ms: int = INTER_BATCH_DELAY_MS
    min_split_size: int = MIN_SPLIT_SIZE
    developer_id: str = ""
    user_email: str = ""
    project_name: str = ""
    service_account_key_path: str | None = None
    state_path: str = DEFAULT_STATE_PATH

    def limits(self) -> RetryLimits:
        return RetryLimits(
            max_retries=self.max_retries,
            max_connection_resets=self.max_connection_resets,
            initial_retry_delay_ms=self.initial_retry_delay_ms,
            max_retry_delay_ms=self.max_retry_delay_ms,
            inter_batch_delay_ms=self.inter_batch_delay_ms,
            min_split_size=self.min_split_size,
        )
