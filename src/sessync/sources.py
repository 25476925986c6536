"""Record source: reads already-normalised records from JSONL.

Each non-blank line is one JSON object with at least an ``id``. Every
other key is carried through as the record payload untouched.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sessync.models import Record, RecordMetadata
from sessync.upload.exceptions import RecordSourceError

logger = logging.getLogger(__name__)


class RecordRow(BaseModel):
    """One JSONL line. Unknown keys are kept as payload."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1, description="Stable unique record id")

    def to_record(self, metadata: RecordMetadata) -> Record:
        payload = dict(self.model_extra or {})
        return Record(id=self.id, payload=payload, metadata=metadata)


def read_records(path: Path, metadata: RecordMetadata | None = None) -> list[Record]:
    """Read *path* and return its records in file order.

    Args:
        path: JSONL file, one record per line.
        metadata: Provenance stamped onto every record. Defaults to an
            empty :class:`RecordMetadata` with ``source_file`` set to
            *path*.

    Raises:
        RecordSourceError: Unreadable file, malformed JSON or a line
            failing validation. The message names the line number.
    """
    if metadata is None:
        metadata = RecordMetadata(source_file=str(path))

    records: list[Record] = []
    try:
        with open(path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    row = RecordRow.model_validate(json.loads(line))
                except json.JSONDecodeError as exc:
                    raise RecordSourceError(
                        f"{path}:{line_no}: invalid JSON: {exc}"
                    ) from exc
                except ValidationError as exc:
                    raise RecordSourceError(
                        f"{path}:{line_no}: invalid record: {exc}"
                    ) from exc
                records.append(row.to_record(metadata))
    except OSError as exc:
        raise RecordSourceError(f"Failed to read records file {path}: {exc}") from exc

    logger.info("Read %d records from %s", len(records), path)
    return records
