"""Exponential backoff for the upload retry loops."""

from __future__ import annotations

from tenacity import RetryCallState
from tenacity.wait import wait_base

from sessync.constants import INITIAL_RETRY_DELAY_MS, MAX_RETRY_DELAY_MS
from sessync.models import RetryLimits


def calculate_retry_delay(
    retry_count: int,
    initial_delay_ms: int = INITIAL_RETRY_DELAY_MS,
    max_delay_ms: int = MAX_RETRY_DELAY_MS,
) -> int:
    """Delay in milliseconds before retry number *retry_count* (1-based).

    ``min(initial * 2**(n-1), max)``: with the defaults this yields
    1000, 2000, 4000, 8000, 16000, 32000, 32000, ...
    """
    if retry_count < 1:
        raise ValueError(f"retry_count must be >= 1, got {retry_count}")
    # Cap the exponent so huge counts don't build huge ints.
    exponent = min(retry_count - 1, 62)
    return min(initial_delay_ms * (1 << exponent), max_delay_ms)


class wait_capped_doubling(wait_base):
    """tenacity wait strategy applying :func:`calculate_retry_delay`.

    tenacity numbers attempts from 1, so the wait after attempt *n*
    is the delay for retry number *n*.
    """

    def __init__(self, limits: RetryLimits) -> None:
        self._limits = limits

    def __call__(self, retry_state: RetryCallState) -> float:
        delay_ms = calculate_retry_delay(
            retry_state.attempt_number,
            self._limits.initial_retry_delay_ms,
            self._limits.max_retry_delay_ms,
        )
        return delay_ms / 1000.0
