"""Batch partitioning and resilient chunk uploads.

Records are split into consecutive chunks of at most ``batch_size`` and
uploaded one chunk at a time. Each chunk runs its own retry loop:

* **Oversized request** -- the chunk is halved and each half is retried
  independently (fresh counters, fresh connection), which discovers the
  sink's real size limit without configuration. Chunks at or below
  ``min_split_size`` fail instead of splitting further.
* **Connection-level error** -- the connection is discarded, a new one
  is requested from the factory, and the same chunk is retried after a
  backoff. Bounded by ``max_connection_resets``.
* **Transient error** -- backoff, then retry on the same connection.
  Bounded by ``max_retries``.
* **Anything else** -- fatal, no retry.

A chunk whose response reports per-row errors is credited with zero ids.

Two uploaders share the batching loop:

* :class:`ResilientBatchUploader` (default) obtains connections from a
  :class:`~sessync.upload.sink.SinkFactory` and recovers from
  connection-level failures by reconnecting.
* :class:`SingleSinkBatchUploader` is handed one connection upfront;
  connection-level failures consume the ordinary retry budget.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from sessync.models import (
    Record,
    RetryContext,
    RetryLimits,
    UploadResult,
    UploadSummary,
)
from sessync.upload.classifier import ErrorKind, classify, error_chain_to_string
from sessync.upload.exceptions import (
    BatchTooLargeError,
    ConnectionResetsExceededError,
    FatalUploadError,
    RetriesExhaustedError,
    SinkCreationError,
    UploadError,
)
from sessync.upload.fsm import ChunkAttemptSM, create_chunk_fsm
from sessync.upload.retry import calculate_retry_delay, wait_capped_doubling
from sessync.upload.sink import (
    Destination,
    InsertOutcome,
    Sink,
    SinkFactory,
    prepare_rows,
)

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]


def partition(records: Sequence[Record], batch_size: int) -> list[list[Record]]:
    """Split *records* into consecutive chunks of at most *batch_size*.

    ``batch_size == 0`` means no splitting: a single chunk holding every
    record. Concatenating the result always reproduces *records*.
    """
    if batch_size < 0:
        raise ValueError(f"batch_size must be >= 0, got {batch_size}")
    if not records:
        return []
    if batch_size == 0:
        return [list(records)]
    return [
        list(records[i : i + batch_size])
        for i in range(0, len(records), batch_size)
    ]


class _BatchUploader(abc.ABC):
    """Shared batching loop. Subclasses implement :meth:`_upload_chunk`."""

    def __init__(
        self,
        destination: Destination,
        limits: RetryLimits | None = None,
        sleep: SleepFunc = asyncio.sleep,
        dry_run: bool = False,
    ) -> None:
        self._destination = destination
        self._limits = limits or RetryLimits()
        self._sleep = sleep
        self._dry_run = dry_run

    @property
    def dry_run(self) -> bool:
        """True when uploads are only logged, never sent."""
        return self._dry_run

    async def upload(
        self, records: Sequence[Record], batch_size: int
    ) -> UploadSummary:
        """Upload *records* chunk by chunk and aggregate the results.

        Raises:
            UploadError: A chunk failed fatally or exhausted its retry
                budget. Chunks uploaded before it are not rolled back.
        """
        summary = UploadSummary.empty()
        if not records:
            logger.info("No records to upload")
            return summary

        logger.info(
            "Preparing to upload %d records to %s",
            len(records),
            self._destination.table_id,
        )

        if self._dry_run:
            logger.info("DRY RUN -- would upload %d records", len(records))
            for record in records:
                logger.info("  - id: %s", record.id)
            summary.add(UploadResult.for_chunk(records, [r.id for r in records]))
            return summary

        chunks = partition(records, batch_size)
        total = len(chunks)
        logger.info(
            "Processing %d batches of up to %d records each",
            total,
            batch_size or len(records),
        )

        for batch_index, chunk in enumerate(chunks, start=1):
            logger.info(
                "Uploading batch %d/%d (%d records)...",
                batch_index,
                total,
                len(chunk),
            )
            credited = await self._upload_chunk(chunk, batch_index)
            summary.add(UploadResult.for_chunk(chunk, credited))

            if batch_index < total:
                await self._sleep(self._limits.inter_batch_delay_ms / 1000.0)

        logger.info(
            "Uploaded %d of %d records (%d failed)",
            summary.uploaded_count,
            len(records),
            summary.failed_count,
        )
        return summary

    @abc.abstractmethod
    async def _upload_chunk(
        self, chunk: list[Record], batch_index: int
    ) -> list[str]:
        """Upload one chunk and return the ids to credit."""

    async def _backoff(self, retry_count: int) -> None:
        delay_ms = calculate_retry_delay(
            retry_count,
            self._limits.initial_retry_delay_ms,
            self._limits.max_retry_delay_ms,
        )
        await self._sleep(delay_ms / 1000.0)

    async def _split_and_upload(
        self, chunk: list[Record], batch_index: int
    ) -> list[str]:
        mid = len(chunk) // 2
        logger.warning(
            "Batch %d too large (%d records), splitting into %d and %d",
            batch_index,
            len(chunk),
            mid,
            len(chunk) - mid,
        )
        uploaded = await self._upload_chunk(chunk[:mid], batch_index)
        uploaded.extend(await self._upload_chunk(chunk[mid:], batch_index))
        return uploaded

    def _too_large(
        self,
        chunk: list[Record],
        batch_index: int,
        ctx: RetryContext,
    ) -> BatchTooLargeError:
        logger.error(
            "Batch %d is too large even at minimum size (%d records)",
            batch_index,
            len(chunk),
        )
        return BatchTooLargeError(
            f"Batch too large even at minimum size ({len(chunk)} records)",
            batch_index=batch_index,
            transient_retries=ctx.transient_retry_count,
            connection_resets=ctx.connection_reset_count,
        )

    @staticmethod
    def _credit(
        chunk: list[Record],
        outcome: InsertOutcome,
        batch_index: int,
        ctx: RetryContext,
    ) -> list[str]:
        if outcome.has_errors:
            # No partial credit: the whole chunk is re-sent next run.
            logger.warning(
                "Batch %d had %d row errors", batch_index, len(outcome.row_errors)
            )
            for row_error in outcome.row_errors:
                logger.warning("  Row %d: %s", row_error.index, row_error.message)
            return []

        logger.info(
            "Batch %d uploaded successfully (%d records)", batch_index, len(chunk)
        )
        if ctx.connection_reset_count > 0:
            logger.info(
                "  (recovered after %d connection resets)",
                ctx.connection_reset_count,
            )
        return [r.id for r in chunk]


class ResilientBatchUploader(_BatchUploader):
    """Uploader that reconnects through a :class:`SinkFactory`.

    Usage::

        uploader = ResilientBatchUploader(factory, destination, config.limits())
        summary = await uploader.upload(records, config.batch_size)
    """

    def __init__(
        self,
        sink_factory: SinkFactory,
        destination: Destination,
        limits: RetryLimits | None = None,
        sleep: SleepFunc = asyncio.sleep,
        dry_run: bool = False,
    ) -> None:
        super().__init__(destination, limits, sleep, dry_run)
        self._factory = sink_factory

    async def _connect(self, batch_index: int, ctx: RetryContext) -> Sink:
        try:
            return await self._factory.create()
        except Exception as exc:
            logger.error("Failed to create sink connection: %s", exc)
            raise SinkCreationError(
                "Failed to create sink connection",
                batch_index=batch_index,
                transient_retries=ctx.transient_retry_count,
                connection_resets=ctx.connection_reset_count,
            ) from exc

    async def _upload_chunk(
        self, chunk: list[Record], batch_index: int
    ) -> list[str]:
        fsm = create_chunk_fsm()
        ctx = RetryContext()
        sink = await self._connect(batch_index, ctx)
        rows = prepare_rows(chunk)

        while True:
            try:
                outcome = await sink.insert(self._destination, rows)
            except Exception as exc:
                error_msg = error_chain_to_string(exc)
                kind = classify(error_msg)

                if kind is ErrorKind.OVERSIZED_REQUEST:
                    if len(chunk) <= self._limits.min_split_size:
                        fsm.fail_fatally()
                        raise self._too_large(chunk, batch_index, ctx) from exc
                    fsm.split()
                    break

                if kind is ErrorKind.CONNECTION_LEVEL:
                    ctx.connection_reset_count += 1
                    if ctx.connection_reset_count > self._limits.max_connection_resets:
                        fsm.fail_fatally()
                        logger.error(
                            "Batch %d failed after %d connection resets: %s",
                            batch_index,
                            ctx.connection_reset_count,
                            error_msg,
                        )
                        raise ConnectionResetsExceededError(
                            "Too many connection resets",
                            batch_index=batch_index,
                            transient_retries=ctx.transient_retry_count,
                            connection_resets=ctx.connection_reset_count,
                        ) from exc
                    fsm.reconnect()
                    logger.warning(
                        "Batch %d connection error (reset #%d), creating new connection: %s",
                        batch_index,
                        ctx.connection_reset_count,
                        error_msg,
                    )
                    sink = await self._reconnect(fsm, batch_index, ctx)
                    await self._backoff(ctx.connection_reset_count)
                    ctx.transient_retry_count = 0
                    fsm.retry()
                    continue

                if kind is ErrorKind.TRANSIENT:
                    ctx.transient_retry_count += 1
                    if ctx.transient_retry_count > self._limits.max_retries:
                        fsm.fail_fatally()
                        logger.error(
                            "Batch %d failed after %d retries: %s",
                            batch_index,
                            ctx.transient_retry_count - 1,
                            error_msg,
                        )
                        raise RetriesExhaustedError(
                            "Transient errors persisted past the retry limit",
                            batch_index=batch_index,
                            transient_retries=ctx.transient_retry_count - 1,
                            connection_resets=ctx.connection_reset_count,
                        ) from exc
                    fsm.back_off()
                    logger.warning(
                        "Batch %d transient error (attempt %d), retrying: %s",
                        batch_index,
                        ctx.transient_retry_count,
                        error_msg,
                    )
                    await self._backoff(ctx.transient_retry_count)
                    fsm.retry()
                    continue

                fsm.fail_fatally()
                logger.error("Batch %d failed: %s", batch_index, error_msg)
                raise FatalUploadError(
                    "Failed to upload batch",
                    batch_index=batch_index,
                    transient_retries=ctx.transient_retry_count,
                    connection_resets=ctx.connection_reset_count,
                ) from exc

            fsm.succeed()
            return self._credit(chunk, outcome, batch_index, ctx)

        # Split outside the handler so the halves raise without this chunk's
        # error as their __context__.
        return await self._join_halves(fsm, chunk, batch_index)

    async def _reconnect(
        self, fsm: ChunkAttemptSM, batch_index: int, ctx: RetryContext
    ) -> Sink:
        try:
            return await self._connect(batch_index, ctx)
        except SinkCreationError:
            fsm.abort()
            raise

    async def _join_halves(
        self, fsm: ChunkAttemptSM, chunk: list[Record], batch_index: int
    ) -> list[str]:
        try:
            uploaded = await self._split_and_upload(chunk, batch_index)
        except UploadError:
            fsm.abort()
            raise
        fsm.join()
        return uploaded


class SingleSinkBatchUploader(_BatchUploader):
    """Uploader bound to one connection for its whole lifetime.

    Connection-level and transient failures share a single
    ``max_retries`` budget; there is no reconnection.
    """

    def __init__(
        self,
        sink: Sink,
        destination: Destination,
        limits: RetryLimits | None = None,
        sleep: SleepFunc = asyncio.sleep,
        dry_run: bool = False,
    ) -> None:
        super().__init__(destination, limits, sleep, dry_run)
        self._sink = sink

    async def _upload_chunk(
        self, chunk: list[Record], batch_index: int
    ) -> list[str]:
        rows = prepare_rows(chunk)
        attempts = 0

        def _log_retry(retry_state) -> None:
            logger.warning(
                "Batch %d failed (attempt %d), retrying in %.1fs: %s",
                batch_index,
                retry_state.attempt_number,
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
                error_chain_to_string(retry_state.outcome.exception()),
            )

        retrying = AsyncRetrying(
            retry=retry_if_exception(
                lambda exc: classify(exc)
                in (ErrorKind.CONNECTION_LEVEL, ErrorKind.TRANSIENT)
            ),
            stop=stop_after_attempt(self._limits.max_retries + 1),
            wait=wait_capped_doubling(self._limits),
            sleep=self._sleep,
            before_sleep=_log_retry,
            reraise=True,
        )

        split = False
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    outcome = await self._sink.insert(self._destination, rows)
        except Exception as exc:
            ctx = RetryContext(transient_retry_count=attempts - 1)
            error_msg = error_chain_to_string(exc)
            kind = classify(error_msg)

            if kind is not ErrorKind.OVERSIZED_REQUEST:
                logger.error(
                    "Failed to upload batch %d after %d retries: %s",
                    batch_index,
                    ctx.transient_retry_count,
                    error_msg,
                )
                if kind is ErrorKind.FATAL:
                    raise FatalUploadError(
                        "Failed to upload batch",
                        batch_index=batch_index,
                        transient_retries=ctx.transient_retry_count,
                    ) from exc
                raise RetriesExhaustedError(
                    "Retryable errors persisted past the retry limit",
                    batch_index=batch_index,
                    transient_retries=ctx.transient_retry_count,
                ) from exc
            if len(chunk) <= self._limits.min_split_size:
                raise self._too_large(chunk, batch_index, ctx) from exc
            split = True

        if split:
            return await self._split_and_upload(chunk, batch_index)
        return self._credit(chunk, outcome, batch_index, RetryContext())
