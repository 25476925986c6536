"""Persistence of :class:`~sessync.models.UploadState`.

State is loaded once at the start of a run and saved once at the end,
never per chunk. A missing state loads as the zero value.

Two stores are provided:

* :class:`JsonStateStore` -- one pretty-printed JSON file per key
  (the key is the file path). Default.
* :class:`SqliteStateStore` -- aiosqlite-backed, many keys per
  database file.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol, runtime_checkable

import aiosqlite

from sessync.models import UploadState
from sessync.upload.exceptions import StateStoreError

logger = logging.getLogger(__name__)


@runtime_checkable
class StateStore(Protocol):
    async def load(self, key: str) -> UploadState: ...

    async def save(self, key: str, state: UploadState) -> None: ...


class JsonStateStore:
    """File-backed state store.

    The file is replaced atomically so a crash mid-write never leaves a
    truncated state behind.
    """

    async def load(self, key: str) -> UploadState:
        return await asyncio.to_thread(self._load_sync, Path(key))

    async def save(self, key: str, state: UploadState) -> None:
        await asyncio.to_thread(self._save_sync, Path(key), state)

    @staticmethod
    def _load_sync(path: Path) -> UploadState:
        if not path.exists():
            logger.info("No existing upload state at %s, starting fresh", path)
            return UploadState()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise StateStoreError(f"Failed to read upload state {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StateStoreError(f"Upload state {path} is not a JSON object")
        state = UploadState.from_dict(data)
        logger.info(
            "Loaded upload state: %d records previously uploaded",
            state.total_uploaded,
        )
        return state

    @staticmethod
    def _save_sync(path: Path, state: UploadState) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(state.to_dict(), f, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StateStoreError(f"Failed to write upload state {path}: {exc}") from exc
        logger.info(
            "Saved upload state: %d total records uploaded", state.total_uploaded
        )


class SqliteStateStore:
    """aiosqlite-backed state store.

    ``uploaded_ids`` is append-only: saving inserts any ids not yet
    stored and never deletes. Each save commits immediately.

    Usage::

        async with SqliteStateStore("data/sessync.db") as store:
            state = await store.load("default")
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection and create tables if needed."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS upload_state (
                key TEXT PRIMARY KEY,
                last_upload_timestamp TEXT,
                last_batch_id TEXT,
                total_uploaded INTEGER NOT NULL DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS uploaded_ids (
                key TEXT NOT NULL,
                record_id TEXT NOT NULL,
                PRIMARY KEY (key, record_id)
            );
            """
        )
        await self._db.commit()

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> SqliteStateStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    # ------------------------------------------------------------------
    # StateStore
    # ------------------------------------------------------------------

    async def load(self, key: str) -> UploadState:
        db = self._ensure_connected()
        cursor = await db.execute(
            """SELECT last_upload_timestamp, last_batch_id, total_uploaded
               FROM upload_state WHERE key = ?""",
            (key,),
        )
        row = await cursor.fetchone()
        if row is None:
            logger.info("No existing upload state for %r, starting fresh", key)
            return UploadState()

        cursor = await db.execute(
            "SELECT record_id FROM uploaded_ids WHERE key = ?", (key,)
        )
        ids = {r["record_id"] for r in await cursor.fetchall()}
        return UploadState(
            last_upload_timestamp=row["last_upload_timestamp"],
            uploaded_ids=ids,
            last_batch_id=row["last_batch_id"],
            total_uploaded=row["total_uploaded"],
        )

    async def save(self, key: str, state: UploadState) -> None:
        db = self._ensure_connected()
        await db.execute(
            """INSERT INTO upload_state
                   (key, last_upload_timestamp, last_batch_id, total_uploaded)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   last_upload_timestamp = excluded.last_upload_timestamp,
                   last_batch_id = excluded.last_batch_id,
                   total_uploaded = excluded.total_uploaded""",
            (
                key,
                state.last_upload_timestamp,
                state.last_batch_id,
                state.total_uploaded,
            ),
        )
        await db.executemany(
            "INSERT OR IGNORE INTO uploaded_ids (key, record_id) VALUES (?, ?)",
            [(key, record_id) for record_id in state.uploaded_ids],
        )
        await db.commit()
        logger.debug(
            "Saved upload state %r: %d ids, %d total",
            key,
            len(state.uploaded_ids),
            state.total_uploaded,
        )
