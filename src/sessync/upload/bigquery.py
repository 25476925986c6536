"""BigQuery streaming-insert sink.

Wraps ``google.cloud.bigquery.Client.insert_rows_json``. Each row is
sent with its record id as ``insertId`` so BigQuery drops rows that are
redelivered after a crash between upload and state persistence.

The client library is synchronous; calls run in a worker thread so the
upload loop stays on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Sequence

from google.cloud import bigquery

from sessync.upload.sink import Destination, InsertOutcome, InsertRow, RowError

logger = logging.getLogger(__name__)


def _row_error_message(errors: Sequence[dict[str, Any]]) -> str:
    parts = []
    for err in errors:
        reason = err.get("reason")
        message = err.get("message", "")
        parts.append(f"{reason}: {message}" if reason else message)
    return "; ".join(parts)


class BigQuerySink:
    """One BigQuery client session."""

    def __init__(self, client: bigquery.Client) -> None:
        self._client = client

    async def insert(
        self, destination: Destination, rows: Sequence[InsertRow]
    ) -> InsertOutcome:
        json_rows = [row.json for row in rows]
        row_ids = [row.insert_id for row in rows]
        # retry=None: the upload engine owns the retry policy.
        errors = await asyncio.to_thread(
            self._client.insert_rows_json,
            destination.table_id,
            json_rows,
            row_ids=row_ids,
            retry=None,
        )
        row_errors = [
            RowError(
                index=int(e.get("index", -1)),
                message=_row_error_message(e.get("errors", [])),
            )
            for e in errors or []
        ]
        logger.debug(
            "Inserted %d rows into %s (%d row errors)",
            len(rows),
            destination.table_id,
            len(row_errors),
        )
        return InsertOutcome(row_errors=row_errors)

    def close(self) -> None:
        self._client.close()


class BigQuerySinkFactory:
    """Creates a fresh :class:`BigQuerySink` per connection.

    Args:
        project_id: GCP project that owns the dataset.
        location: BigQuery location (e.g. ``US``, ``asia-northeast1``).
        service_account_key_path: Optional key file. When omitted the
            client falls back to application default credentials.
    """

    def __init__(
        self,
        project_id: str,
        location: str | None = None,
        service_account_key_path: str | None = None,
    ) -> None:
        self.project_id = project_id
        self.location = location
        self.service_account_key_path = service_account_key_path
        self._previous: BigQuerySink | None = None

    async def create(self) -> BigQuerySink:
        client = await asyncio.to_thread(self._build_client)
        if self._previous is not None:
            # The old session is abandoned after a connection error.
            try:
                self._previous.close()
            except Exception:
                logger.debug("Ignoring error closing previous client", exc_info=True)
        self._previous = BigQuerySink(client)
        logger.debug("Created BigQuery client for project %s", self.project_id)
        return self._previous

    def close(self) -> None:
        """Close the most recent client, if any. Safe to call twice."""
        if self._previous is not None:
            self._previous.close()
            self._previous = None

    def _build_client(self) -> bigquery.Client:
        if self.service_account_key_path:
            return bigquery.Client.from_service_account_json(
                self.service_account_key_path,
                project=self.project_id,
                location=self.location,
            )
        return bigquery.Client(project=self.project_id, location=self.location)
