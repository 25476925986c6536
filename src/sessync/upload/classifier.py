"""Classification of sink failures into retry categories.

Every decision is made on the flattened cause chain of the exception
(``"outer | cause | root cause"``), because client libraries commonly
wrap the transport error that actually tells us what happened.

Precedence when several markers appear: oversized request, then
connection-level, then transient. Anything else is fatal.
"""

from __future__ import annotations

import re
from enum import Enum

_TOO_LARGE_MARKERS = (
    "413",
    "request entity too large",
    "too large",
    "payload size exceeds",
)

_CONNECTION_MARKERS = (
    "broken pipe",
    "connection reset",
    "connection refused",
    "connection error",
    "unexpected end of file",
    "end of stream",
    "connection aborted",
    "remote end closed",
)

_TRANSIENT_MARKERS = (
    "not found",
    "deleted",
    "500",
    "502",
    "503",
    "504",
    "bad gateway",
    "service unavailable",
    "deadline exceeded",
    "403",
    "429",
    "quota",
    "timeout",
)

# "rate limit", "rateLimitExceeded", but not "generate" or "separate".
_RATE_PATTERN = re.compile(r"\brate", re.IGNORECASE)


class ErrorKind(str, Enum):
    """Retry category of a failed insert."""

    OVERSIZED_REQUEST = "oversized_request"
    CONNECTION_LEVEL = "connection_level"
    TRANSIENT = "transient"
    FATAL = "fatal"


def error_chain_to_string(exc: BaseException) -> str:
    """Join the message of *exc* and every exception in its cause chain."""
    messages: list[str] = []
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current) or type(current).__name__
        messages.append(text)
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None
    return " | ".join(messages)


def is_request_too_large_error(error_msg: str) -> bool:
    lowered = error_msg.lower()
    return any(marker in lowered for marker in _TOO_LARGE_MARKERS)


def is_connection_error(error_msg: str) -> bool:
    """The transport is unusable and a new connection is required."""
    if "EOF" in error_msg:
        return True
    lowered = error_msg.lower()
    return any(marker in lowered for marker in _CONNECTION_MARKERS)


def is_transient_error(error_msg: str) -> bool:
    """The condition should clear by retrying on the same connection."""
    lowered = error_msg.lower()
    if any(marker in lowered for marker in _TRANSIENT_MARKERS):
        return True
    return _RATE_PATTERN.search(error_msg) is not None


def is_retryable_error(error_msg: str) -> bool:
    return is_connection_error(error_msg) or is_transient_error(error_msg)


def classify(error: BaseException | str) -> ErrorKind:
    """Map an exception (or an already flattened message) to an :class:`ErrorKind`."""
    error_msg = error if isinstance(error, str) else error_chain_to_string(error)
    if is_request_too_large_error(error_msg):
        return ErrorKind.OVERSIZED_REQUEST
    if is_connection_error(error_msg):
        return ErrorKind.CONNECTION_LEVEL
    if is_transient_error(error_msg):
        return ErrorKind.TRANSIENT
    return ErrorKind.FATAL
