"""Configuration loading and validation for the uploader."""

from __future__ import annotations

import dataclasses
import json
import os
from pathlib import Path

from sessync.constants import DEFAULT_CONFIG_PATH
from sessync.models import UploadConfig
from sessync.upload.exceptions import ConfigError

# Config file keys that differ from the UploadConfig field names.
_KEY_ALIASES = {"upload_batch_size": "batch_size"}

_REQUIRED = ("project_id", "dataset", "table")

_NON_NEGATIVE = (
    "batch_size",
    "max_retries",
    "max_connection_resets",
    "initial_retry_delay_ms",
    "max_retry_delay_ms",
    "inter_batch_delay_ms",
    "min_split_size",
)


def load_upload_config(config_path: Path | None = None) -> UploadConfig:
    """Load upload configuration from JSON, merging over defaults.

    Reads ``./.claude/sessync/config.json`` when *config_path* is
    ``None``. Unknown keys are ignored. When the file does not name a
    service account key, ``GOOGLE_APPLICATION_CREDENTIALS`` is used if
    set.

    Raises:
        ConfigError: File missing, not valid JSON, or failing validation.
    """
    if config_path is None:
        config_path = Path(DEFAULT_CONFIG_PATH)

    try:
        with open(config_path, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {config_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a JSON object")

    field_names = {f.name for f in dataclasses.fields(UploadConfig)}
    kwargs = {}
    for key, value in data.items():
        name = _KEY_ALIASES.get(key, key)
        if name in field_names:
            kwargs[name] = value

    config = UploadConfig(**kwargs)

    if not config.service_account_key_path:
        config.service_account_key_path = os.environ.get(
            "GOOGLE_APPLICATION_CREDENTIALS"
        )

    validate_config(config)
    return config


def validate_config(config: UploadConfig) -> None:
    """Raise :class:`ConfigError` describing every invalid field."""
    problems = [f"{name} is required" for name in _REQUIRED if not getattr(config, name)]
    for name in _NON_NEGATIVE:
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            problems.append(f"{name} must be a non-negative integer, got {value!r}")
    if not isinstance(config.enable_deduplication, bool):
        problems.append("enable_deduplication must be true or false")
    if (
        isinstance(config.initial_retry_delay_ms, int)
        and isinstance(config.max_retry_delay_ms, int)
        and config.initial_retry_delay_ms > config.max_retry_delay_ms
    ):
        problems.append("initial_retry_delay_ms must not exceed max_retry_delay_ms")
    if problems:
        raise ConfigError("Invalid configuration: " + "; ".join(problems))
