"""Filtering of records that were already uploaded in a previous run."""

from __future__ import annotations

from typing import AbstractSet, Sequence

from sessync.models import Record


def filter_new_records(
    records: Sequence[Record],
    uploaded_ids: AbstractSet[str],
    enabled: bool = True,
) -> list[Record]:
    """Drop records whose id is already in *uploaded_ids*.

    Order is preserved. When *enabled* is ``False`` the input is
    returned unchanged.
    """
    if not enabled:
        return list(records)
    return [r for r in records if r.id not in uploaded_ids]


def extract_ids(records: Sequence[Record]) -> list[str]:
    return [r.id for r in records]


def count_duplicates(
    records: Sequence[Record], uploaded_ids: AbstractSet[str]
) -> int:
    """Number of records that *filter_new_records* would drop."""
    return sum(1 for r in records if r.id in uploaded_ids)
