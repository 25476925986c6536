"""Interfaces between the upload engine and the remote sink.

The engine only needs two capabilities: ``insert`` on an established
connection, and ``create`` to (re)establish one. Implementations:

* :mod:`sessync.upload.bigquery` -- BigQuery streaming inserts.
* ``tests/fakes.py`` -- deterministic doubles that script failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence, runtime_checkable

from sessync.models import Record


@dataclass(frozen=True)
class Destination:
    """Fully qualified target table."""

    project_id: str
    dataset: str
    table: str

    @property
    def table_id(self) -> str:
        return f"{self.project_id}.{self.dataset}.{self.table}"


@dataclass(frozen=True)
class InsertRow:
    """A row plus the insert id the sink uses to drop redelivered rows."""

    insert_id: str
    json: dict[str, Any]


@dataclass(frozen=True)
class RowError:
    """A per-row failure inside an otherwise accepted insert request."""

    index: int
    message: str


@dataclass
class InsertOutcome:
    """Result of a request the sink accepted."""

    row_errors: list[RowError] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.row_errors)


@runtime_checkable
class Sink(Protocol):
    async def insert(
        self, destination: Destination, rows: Sequence[InsertRow]
    ) -> InsertOutcome:
        """Submit *rows*. Raises on request-level failure."""
        ...


@runtime_checkable
class SinkFactory(Protocol):
    async def create(self) -> Sink:
        """Establish a new connection. Raises if that is impossible."""
        ...


def prepare_rows(records: Sequence[Record]) -> list[InsertRow]:
    """Build insert rows, keyed by each record's id."""
    return [InsertRow(insert_id=r.id, json=r.to_row()) for r in records]
