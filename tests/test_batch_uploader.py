"""Tests for partitioning and the chunk retry loops.

All sinks are ``tests.fakes`` doubles and every sleep is recorded rather
than awaited, so nothing touches the network or real time.

Groups:
  - partition
  - ResilientBatchUploader: success path, inter-batch delay
  - ResilientBatchUploader: transient retries
  - ResilientBatchUploader: connection resets
  - ResilientBatchUploader: oversized splitting
  - ResilientBatchUploader: row errors, fatal errors, dry run
  - SingleSinkBatchUploader
  - abstract base
"""

from __future__ import annotations

import pytest

from sessync.models import RetryLimits
from sessync.upload.batch_uploader import (
    ResilientBatchUploader,
    SingleSinkBatchUploader,
    _BatchUploader,
    partition,
)
from sessync.upload.exceptions import (
    BatchTooLargeError,
    ConnectionResetsExceededError,
    FatalUploadError,
    RetriesExhaustedError,
    SinkCreationError,
)
from sessync.upload.sink import InsertOutcome, RowError
from tests.fakes import FakeSink, FakeSinkFactory, make_records


def _ids(rows) -> list[str]:
    return [row.insert_id for row in rows]


# ======================================================================
# partition
# ======================================================================


class TestPartition:
    """Chunks are consecutive, bounded and reassemble to the input."""

    @pytest.mark.parametrize(
        "n, batch_size, sizes",
        [
            (5, 2, [2, 2, 1]),
            (4, 2, [2, 2]),
            (3, 10, [3]),
            (7, 0, [7]),
            (1, 1, [1]),
        ],
    )
    def test_chunk_sizes(self, n, batch_size, sizes):
        records = make_records(n)
        chunks = partition(records, batch_size)
        assert [len(c) for c in chunks] == sizes
        assert [r for c in chunks for r in c] == records

    def test_empty_input(self):
        assert partition([], 3) == []
        assert partition([], 0) == []

    def test_negative_batch_size_rejected(self):
        with pytest.raises(ValueError):
            partition(make_records(2), -1)


# ======================================================================
# Success path
# ======================================================================


class TestResilientSuccess:
    """Chunks that succeed first time."""

    async def test_five_records_batch_two(self, destination, sleep):
        """[2, 2, 1] chunks, two inter-batch delays, nothing after the last."""
        factory = FakeSinkFactory()
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(inter_batch_delay_ms=200), sleep=sleep
        )
        records = make_records(5)

        summary = await uploader.upload(records, 2)

        assert [len(rows) for rows in factory.insert_calls] == [2, 2, 1]
        assert sleep.delays == [0.2, 0.2]
        assert summary.uploaded_count == 5
        assert summary.failed_count == 0
        assert summary.uploaded_ids == [r.id for r in records]

    async def test_single_chunk_has_no_delay(self, destination, sleep):
        factory = FakeSinkFactory()
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        await uploader.upload(make_records(3), 0)

        assert factory.create_count == 1
        assert sleep.delays == []

    async def test_empty_input_touches_nothing(self, destination, sleep):
        factory = FakeSinkFactory()
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        summary = await uploader.upload([], 2)

        assert factory.create_count == 0
        assert summary.uploaded_count == 0
        assert summary.uploaded_ids == []

    async def test_rows_keyed_by_record_id(self, destination, sleep):
        factory = FakeSinkFactory()
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)
        records = make_records(2)

        await uploader.upload(records, 0)

        rows = factory.insert_calls[0]
        assert _ids(rows) == [r.id for r in records]
        assert rows[0].json["uuid"] == records[0].id
        assert rows[0].json["seq"] == 0
        assert rows[0].json["developer_id"] == "dev-1"


# ======================================================================
# Transient retries
# ======================================================================


class TestResilientTransient:
    """Transient errors retry on the same connection."""

    async def test_recovers_after_transient(self, destination, sleep):
        factory = FakeSinkFactory(
            scripts=[[RuntimeError("503 Service Unavailable"), RuntimeError("quota")]]
        )
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        summary = await uploader.upload(make_records(3), 0)

        assert factory.create_count == 1
        assert factory.sinks[0].call_count == 3
        assert sleep.delays == [1.0, 2.0]
        assert summary.uploaded_count == 3

    async def test_max_retries_exhausted(self, destination, sleep):
        """max_retries + 1 insert calls, then RetriesExhaustedError."""
        limits = RetryLimits(max_retries=3)
        factory = FakeSinkFactory(scripts=[[RuntimeError("429 rate limit")] * 10])
        uploader = ResilientBatchUploader(factory, destination, limits, sleep=sleep)

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await uploader.upload(make_records(3), 0)

        assert factory.sinks[0].call_count == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert exc_info.value.batch_index == 1
        assert exc_info.value.transient_retries == 3
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    async def test_zero_retries_fails_on_first_transient(self, destination, sleep):
        limits = RetryLimits(max_retries=0)
        factory = FakeSinkFactory(scripts=[[RuntimeError("timeout")]])
        uploader = ResilientBatchUploader(factory, destination, limits, sleep=sleep)

        with pytest.raises(RetriesExhaustedError):
            await uploader.upload(make_records(1), 0)

        assert factory.sinks[0].call_count == 1
        assert sleep.delays == []


# ======================================================================
# Connection resets
# ======================================================================


class TestResilientConnectionReset:
    """Connection-level errors discard the connection and reconnect."""

    async def test_reset_then_success(self, destination, sleep):
        """Factory invoked twice; the second sink receives exactly one call."""
        factory = FakeSinkFactory(scripts=[[RuntimeError("Connection reset by peer")]])
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        summary = await uploader.upload(make_records(2), 0)

        assert factory.create_count == 2
        assert factory.sinks[0].call_count == 1
        assert factory.sinks[1].call_count == 1
        assert sleep.delays == [1.0]
        assert summary.uploaded_count == 2

    async def test_reset_clears_transient_counter(self, destination, sleep):
        """A reconnect gives the new connection a full transient budget."""
        limits = RetryLimits(max_retries=1)
        factory = FakeSinkFactory(
            scripts=[
                [RuntimeError("503"), RuntimeError("broken pipe")],
                [RuntimeError("503")],
            ]
        )
        uploader = ResilientBatchUploader(factory, destination, limits, sleep=sleep)

        summary = await uploader.upload(make_records(1), 0)

        assert summary.uploaded_count == 1
        # transient #1, reset #1, transient #1 again
        assert sleep.delays == [1.0, 1.0, 1.0]

    async def test_reset_limit_exceeded(self, destination, sleep):
        limits = RetryLimits(max_connection_resets=2)
        factory = FakeSinkFactory(scripts=[[RuntimeError("EOF")]] * 5)
        uploader = ResilientBatchUploader(factory, destination, limits, sleep=sleep)

        with pytest.raises(ConnectionResetsExceededError) as exc_info:
            await uploader.upload(make_records(2), 0)

        assert factory.create_count == 3
        assert exc_info.value.connection_resets == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_factory_failure_on_reconnect(self, destination, sleep):
        factory = FakeSinkFactory(scripts=[[RuntimeError("connection refused")]])
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        original_create = factory.create

        async def create_once():
            if factory.create_count >= 1:
                raise OSError("no route to host")
            return await original_create()

        factory.create = create_once

        with pytest.raises(SinkCreationError) as exc_info:
            await uploader.upload(make_records(2), 0)

        assert isinstance(exc_info.value.__cause__, OSError)

    async def test_factory_failure_on_first_connect(self, destination, sleep):
        factory = FakeSinkFactory()
        factory.create_error = OSError("credentials unavailable")
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        with pytest.raises(SinkCreationError):
            await uploader.upload(make_records(2), 0)


# ======================================================================
# Oversized splitting
# ======================================================================


class TestResilientSplit:
    """Oversized chunks are halved until they fit."""

    async def test_split_credits_all_halves(self, destination, sleep):
        """A sink that rejects more than 2 rows ends up receiving every record."""
        factory = FakeSinkFactory(
            responder=lambda rows: RuntimeError("413 Request Entity Too Large")
            if len(rows) > 2
            else InsertOutcome()
        )
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(min_split_size=1), sleep=sleep
        )
        records = make_records(7)

        summary = await uploader.upload(records, 0)

        assert summary.uploaded_count == 7
        assert summary.failed_count == 0
        assert sorted(summary.uploaded_ids) == sorted(r.id for r in records)
        accepted = [rows for rows in factory.insert_calls if len(rows) <= 2]
        assert sorted(i for rows in accepted for i in _ids(rows)) == sorted(
            r.id for r in records
        )

    async def test_split_halves_use_fresh_connections(self, destination, sleep):
        factory = FakeSinkFactory(scripts=[[RuntimeError("too large")]])
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(min_split_size=2), sleep=sleep
        )

        await uploader.upload(make_records(5), 0)

        assert factory.create_count == 3
        assert [len(rows) for rows in factory.insert_calls] == [5, 2, 3]

    async def test_oversized_at_minimum_size_fails(self, destination, sleep):
        factory = FakeSinkFactory(scripts=[[RuntimeError("413")]])
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(min_split_size=10), sleep=sleep
        )

        with pytest.raises(BatchTooLargeError):
            await uploader.upload(make_records(10), 0)

        assert factory.create_count == 1

    async def test_always_oversized_terminates(self, destination, sleep):
        """A sink that rejects everything stops once halves hit the floor."""
        factory = FakeSinkFactory(responder=lambda rows: RuntimeError("413"))
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(min_split_size=3), sleep=sleep
        )

        with pytest.raises(BatchTooLargeError):
            await uploader.upload(make_records(50), 0)

        # 50 -> 25 -> 12 -> 6 -> 3 (fails)
        assert [len(rows) for rows in factory.insert_calls] == [50, 25, 12, 6, 3]

    async def test_split_half_fatal_aborts(self, destination, sleep):
        def respond(rows):
            if len(rows) > 2:
                return RuntimeError("413")
            if rows[0].insert_id == "rec-0002":
                return RuntimeError("invalid schema")
            return InsertOutcome()

        factory = FakeSinkFactory(responder=respond)
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(min_split_size=1), sleep=sleep
        )

        with pytest.raises(FatalUploadError):
            await uploader.upload(make_records(4), 0)

    async def test_split_half_retries_transient_error(self, destination, sleep):
        """A transient error inside a half is retried, not split again."""
        failed_once: set[str] = set()

        def respond(rows):
            if len(rows) > 2:
                return RuntimeError("413 Request Entity Too Large")
            first = rows[0].insert_id
            if first == "rec-0000" and first not in failed_once:
                failed_once.add(first)
                return RuntimeError("503 Service Unavailable")
            return InsertOutcome()

        factory = FakeSinkFactory(responder=respond)
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(min_split_size=1), sleep=sleep
        )

        summary = await uploader.upload(make_records(4), 0)

        assert summary.uploaded_count == 4
        assert [len(rows) for rows in factory.insert_calls] == [4, 2, 2, 2]
        assert sleep.delays == [1.0]
        assert factory.create_count == 3

    async def test_split_half_reconnects_on_connection_error(self, destination, sleep):
        failed_once: set[str] = set()

        def respond(rows):
            if len(rows) > 2:
                return RuntimeError("413")
            first = rows[0].insert_id
            if first == "rec-0002" and first not in failed_once:
                failed_once.add(first)
                return RuntimeError("Connection reset by peer")
            return InsertOutcome()

        factory = FakeSinkFactory(responder=respond)
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(min_split_size=1), sleep=sleep
        )

        summary = await uploader.upload(make_records(4), 0)

        assert summary.uploaded_count == 4
        assert [len(rows) for rows in factory.insert_calls] == [4, 2, 2, 2]
        # full chunk, two halves, one reconnect
        assert factory.create_count == 4
        assert sleep.delays == [1.0]

    async def test_split_half_fatal_error_is_not_chained_to_oversize(
        self, destination, sleep
    ):
        """The half's error must not carry the parent's 413 as context."""
        factory = FakeSinkFactory(
            scripts=[[RuntimeError("413")], [ValueError("invalid schema")]]
        )
        uploader = ResilientBatchUploader(
            factory, destination, RetryLimits(min_split_size=1), sleep=sleep
        )

        with pytest.raises(FatalUploadError) as exc_info:
            await uploader.upload(make_records(4), 0)

        assert exc_info.value.__cause__.__context__ is None
        assert [len(rows) for rows in factory.insert_calls] == [4, 2]


# ======================================================================
# Row errors, fatal errors, dry run
# ======================================================================


class TestResilientOutcomes:
    async def test_row_errors_credit_nothing(self, destination, sleep):
        factory = FakeSinkFactory(
            scripts=[[InsertOutcome(row_errors=[RowError(1, "invalid: bad field")])]]
        )
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        summary = await uploader.upload(make_records(3), 0)

        assert summary.uploaded_count == 0
        assert summary.failed_count == 3
        assert summary.uploaded_ids == []

    async def test_row_errors_only_affect_their_chunk(self, destination, sleep):
        factory = FakeSinkFactory(
            scripts=[[InsertOutcome(row_errors=[RowError(0, "bad")])], []]
        )
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        summary = await uploader.upload(make_records(4), 2)

        assert summary.uploaded_ids == ["rec-0002", "rec-0003"]
        assert summary.failed_count == 2

    async def test_fatal_error_not_retried(self, destination, sleep):
        factory = FakeSinkFactory(scripts=[[ValueError("invalid table schema")]])
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        with pytest.raises(FatalUploadError) as exc_info:
            await uploader.upload(make_records(2), 0)

        assert factory.sinks[0].call_count == 1
        assert sleep.delays == []
        assert "batch 1" in str(exc_info.value)

    async def test_fatal_in_second_chunk_reports_index(self, destination, sleep):
        factory = FakeSinkFactory(scripts=[[], [ValueError("permission denied")]])
        uploader = ResilientBatchUploader(factory, destination, sleep=sleep)

        with pytest.raises(FatalUploadError) as exc_info:
            await uploader.upload(make_records(4), 2)

        assert exc_info.value.batch_index == 2

    async def test_dry_run_never_connects(self, destination, sleep):
        factory = FakeSinkFactory()
        uploader = ResilientBatchUploader(
            factory, destination, sleep=sleep, dry_run=True
        )
        records = make_records(3)

        summary = await uploader.upload(records, 1)

        assert uploader.dry_run is True
        assert factory.create_count == 0
        assert summary.uploaded_ids == [r.id for r in records]
        assert sleep.delays == []


# ======================================================================
# Single-sink variant
# ======================================================================


class TestSingleSinkUploader:
    """One connection for the whole run; tenacity drives retries."""

    async def test_success(self, destination, sleep):
        sink = FakeSink()
        uploader = SingleSinkBatchUploader(sink, destination, sleep=sleep)

        summary = await uploader.upload(make_records(5), 2)

        assert sink.call_count == 3
        assert summary.uploaded_count == 5

    async def test_connection_error_uses_retry_budget(self, destination, sleep):
        sink = FakeSink([RuntimeError("broken pipe"), RuntimeError("503")])
        uploader = SingleSinkBatchUploader(sink, destination, sleep=sleep)

        summary = await uploader.upload(make_records(2), 0)

        assert sink.call_count == 3
        assert sleep.delays == [1.0, 2.0]
        assert summary.uploaded_count == 2

    async def test_max_retries_exhausted(self, destination, sleep):
        sink = FakeSink([RuntimeError("timeout")] * 10)
        uploader = SingleSinkBatchUploader(
            sink, destination, RetryLimits(max_retries=2), sleep=sleep
        )

        with pytest.raises(RetriesExhaustedError) as exc_info:
            await uploader.upload(make_records(2), 0)

        assert sink.call_count == 3
        assert exc_info.value.transient_retries == 2

    async def test_fatal_not_retried(self, destination, sleep):
        sink = FakeSink([ValueError("invalid schema")])
        uploader = SingleSinkBatchUploader(sink, destination, sleep=sleep)

        with pytest.raises(FatalUploadError):
            await uploader.upload(make_records(2), 0)

        assert sink.call_count == 1

    async def test_oversized_splits(self, destination, sleep):
        sink = FakeSink([RuntimeError("413")])
        uploader = SingleSinkBatchUploader(
            sink, destination, RetryLimits(min_split_size=1), sleep=sleep
        )

        summary = await uploader.upload(make_records(4), 0)

        assert [len(rows) for rows in sink.calls] == [4, 2, 2]
        assert summary.uploaded_count == 4

    async def test_oversized_at_minimum_fails(self, destination, sleep):
        sink = FakeSink([RuntimeError("413")])
        uploader = SingleSinkBatchUploader(sink, destination, sleep=sleep)

        with pytest.raises(BatchTooLargeError):
            await uploader.upload(make_records(4), 0)

    async def test_split_half_retries_transient_error(self, destination, sleep):
        sink = FakeSink(
            [RuntimeError("413"), RuntimeError("503 Service Unavailable")]
        )
        uploader = SingleSinkBatchUploader(
            sink, destination, RetryLimits(min_split_size=1), sleep=sleep
        )

        summary = await uploader.upload(make_records(4), 0)

        assert [len(rows) for rows in sink.calls] == [4, 2, 2, 2]
        assert sleep.delays == [1.0]
        assert summary.uploaded_count == 4

    async def test_split_half_retries_connection_error(self, destination, sleep):
        sink = FakeSink([RuntimeError("413"), RuntimeError("broken pipe")])
        uploader = SingleSinkBatchUploader(
            sink, destination, RetryLimits(min_split_size=1), sleep=sleep
        )

        summary = await uploader.upload(make_records(4), 0)

        assert summary.uploaded_count == 4
        assert sleep.delays == [1.0]

    async def test_split_half_fatal_error_is_not_chained_to_oversize(
        self, destination, sleep
    ):
        sink = FakeSink([RuntimeError("413"), ValueError("invalid schema")])
        uploader = SingleSinkBatchUploader(
            sink, destination, RetryLimits(min_split_size=1), sleep=sleep
        )

        with pytest.raises(FatalUploadError) as exc_info:
            await uploader.upload(make_records(4), 0)

        assert exc_info.value.__cause__.__context__ is None
        assert [len(rows) for rows in sink.calls] == [4, 2]


# ======================================================================
# Abstract base
# ======================================================================


class TestBaseUploader:
    def test_base_class_is_abstract(self, destination):
        with pytest.raises(TypeError):
            _BatchUploader(destination)
