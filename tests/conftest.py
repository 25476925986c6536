"""Shared pytest fixtures for sessync tests.

Provides a fixed destination, a recording sleep, a default upload
configuration, and config and records files on disk.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from sessync.models import UploadConfig
from sessync.upload.sink import Destination
from tests.fakes import RecordingSleep


@pytest.fixture
def destination() -> Destination:
    return Destination("test-project", "logs", "session_logs")


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def upload_config(tmp_path: Path) -> UploadConfig:
    return UploadConfig(
        project_id="test-project",
        dataset="logs",
        table="session_logs",
        batch_size=2,
        inter_batch_delay_ms=0,
        state_path=str(tmp_path / "state" / "upload-state.json"),
    )


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """Write a minimal valid config file and return its path."""
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "project_id": "test-project",
                "dataset": "logs",
                "table": "session_logs",
                "location": "asia-northeast1",
                "upload_batch_size": 250,
                "developer_id": "dev-1",
                "user_email": "dev@example.com",
                "project_name": "demo",
                "state_path": str(tmp_path / "upload-state.json"),
            }
        )
    )
    return path


@pytest.fixture
def records_file(tmp_path: Path) -> Path:
    path = tmp_path / "records.jsonl"
    lines = [
        json.dumps({"id": f"rec-{i}", "session_id": "s-1", "message_type": "user"})
        for i in range(3)
    ]
    path.write_text("\n".join(lines) + "\n")
    return path
