"""Project-wide named constants.

Retry values follow the BigQuery streaming-insert guidance: start
small, double on each retry, cap at 32 seconds.
"""

MAX_RETRIES: int = 5
MAX_CONNECTION_RESETS: int = 3
INITIAL_RETRY_DELAY_MS: int = 1000
MAX_RETRY_DELAY_MS: int = 32_000

# Pause between consecutive batches, applied regardless of outcome.
INTER_BATCH_DELAY_MS: int = 200

# Oversized chunks are halved until they reach this size.
MIN_SPLIT_SIZE: int = 10

DEFAULT_BATCH_SIZE: int = 500

# Project-local so that each working tree tracks its own uploads.
DEFAULT_STATE_PATH: str = "./.claude/sessync/upload-state.json"
DEFAULT_CONFIG_PATH: str = "./.claude/sessync/config.json"
