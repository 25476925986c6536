"""Run-level upload orchestration.

Composes the state store, the deduplication filter and a batch uploader
into one idempotent run:

1. Load upload state
2. Drop records that were already uploaded
3. Upload the rest in batches
4. Merge the credited ids into a freshly reloaded state and persist it

State is persisted once per run. A fatal upload error aborts the run
before persistence, so ids credited by earlier chunks of that run are
re-sent next time and deduplicated by the sink's insert ids.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Protocol, Sequence

from sessync.dedup import filter_new_records
from sessync.models import Record, UploadConfig, UploadSummary
from sessync.upload.state import StateStore

logger = logging.getLogger(__name__)


class BatchUploader(Protocol):
    @property
    def dry_run(self) -> bool: ...

    async def upload(
        self, records: Sequence[Record], batch_size: int
    ) -> UploadSummary: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UploadOrchestrator:
    """Main upload engine coordinating state, dedup and upload.

    Usage::

        orchestrator = UploadOrchestrator(uploader, JsonStateStore())
        summary = await orchestrator.run(records, config, config.state_path)

    Args:
        uploader: Batch uploader (normally a ``ResilientBatchUploader``).
        state_store: Where upload state is loaded from and saved to.
        clock: Returns the current time; injectable for tests.
    """

    def __init__(
        self,
        uploader: BatchUploader,
        state_store: StateStore,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._uploader = uploader
        self._state_store = state_store
        self._clock = clock

    async def run(
        self,
        candidate_records: Sequence[Record],
        config: UploadConfig,
        state_key: str,
        batch_id: str | None = None,
    ) -> UploadSummary:
        """Upload the records not yet recorded under *state_key*.

        Raises:
            UploadError: Propagated unchanged from the uploader; state
                is not saved.
        """
        if not candidate_records:
            logger.info("No candidate records, nothing to do")
            return UploadSummary.empty()

        state = await self._state_store.load(state_key)
        new_records = filter_new_records(
            candidate_records, state.uploaded_ids, config.enable_deduplication
        )
        skipped = len(candidate_records) - len(new_records)
        if skipped:
            logger.info("Skipping %d already uploaded records", skipped)

        if not new_records:
            logger.info("No new records to upload")
            return UploadSummary.empty()

        summary = await self._uploader.upload(new_records, config.batch_size)

        if self._uploader.dry_run:
            logger.info("Dry run, upload state left unchanged")
            return summary

        if summary.uploaded_ids:
            batch_id = batch_id or str(uuid.uuid4())
            # Reload rather than reuse: narrows the window for lost
            # updates from another writer during a long upload.
            state = await self._state_store.load(state_key)
            added = state.merge(
                summary.uploaded_ids, batch_id, self._clock().isoformat()
            )
            await self._state_store.save(state_key, state)
            logger.info(
                "Recorded %d newly uploaded ids (batch %s, %d total)",
                added,
                batch_id,
                state.total_uploaded,
            )

        return summary
