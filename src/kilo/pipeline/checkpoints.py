"""Checkpoint stores — durable, append-only snapshots of pipeline runs.

Every backend assigns a per-pipeline monotonic ``sequence`` (first = 1) under
a per-pipeline ``asyncio.Lock`` and commits each checkpoint atomically, never
replacing an earlier one. A reader never sees a partially written checkpoint:
temp files are ignored and documents that fail to parse are logged and skipped.

Key exports:
    CheckpointStore — Protocol shared by all backends
    FileCheckpointStore — ``<dir>/<pipeline_id>/<sequence:08d>.json``
    SqliteCheckpointStore — one row per checkpoint in an aiosqlite database
    MemoryCheckpointStore — process-local store for dry-run and tests
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

import aiosqlite
from pydantic import ValidationError

from kilo.errors import CheckpointWriteError
from kilo.pipeline.models import Checkpoint

logger = logging.getLogger("kilo.pipeline.checkpoints")


class CheckpointStore(Protocol):
    async def save(self, checkpoint: Checkpoint) -> Checkpoint: ...

    async def load_latest(self, pipeline_id: str) -> Checkpoint | None: ...

    async def load_by_id(self, pipeline_id: str, sequence: int) -> Checkpoint | None: ...

    async def list_checkpoints(self, pipeline_id: str) -> list[Checkpoint]: ...

    async def list_pipelines(self) -> list[str]: ...

    async def close(self) -> None: ...


def _report_detached_write(write: asyncio.Future) -> None:
    if write.cancelled():
        return
    error = write.exception()
    if error is not None:
        logger.error("Checkpoint write finished after its caller was cancelled: %s", error)


class _LockingStore:
    """Shared save path: lock, assign sequence, commit, log."""

    _write_errors: tuple[type[BaseException], ...] = (OSError,)

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, pipeline_id: str) -> asyncio.Lock:
        lock = self._locks.get(pipeline_id)
        if lock is None:
            lock = self._locks[pipeline_id] = asyncio.Lock()
        return lock

    async def save(self, checkpoint: Checkpoint) -> Checkpoint:
        """Persist ``checkpoint`` under the next sequence and return the stored copy.

        The write is shielded from cancellation of the caller. A commit that has
        started keeps the per-pipeline lock until it lands, so a later save
        (the interrupt checkpoint written on shutdown, say) takes the next
        sequence instead of racing it.
        """
        write = asyncio.ensure_future(self._save_locked(checkpoint))
        try:
            return await asyncio.shield(write)
        except asyncio.CancelledError:
            write.add_done_callback(_report_detached_write)
            raise

    async def _save_locked(self, checkpoint: Checkpoint) -> Checkpoint:
        pipeline_id = checkpoint.pipeline_id
        async with self._lock_for(pipeline_id):
            try:
                sequence = await self._next_sequence(pipeline_id)
                stored = checkpoint.model_copy(update={"sequence": sequence})
                await self._commit(stored)
            except self._write_errors as e:
                raise CheckpointWriteError(pipeline_id, str(e)) from e
        logger.info(
            "Checkpoint %s#%d written (reason=%s, status=%s)",
            pipeline_id,
            stored.sequence,
            stored.reason.value,
            stored.pipeline_status.value,
        )
        return stored

    async def load_latest(self, pipeline_id: str) -> Checkpoint | None:
        checkpoints = await self.list_checkpoints(pipeline_id)
        return checkpoints[-1] if checkpoints else None

    async def close(self) -> None:
        return None

    async def _next_sequence(self, pipeline_id: str) -> int:
        raise NotImplementedError

    async def _commit(self, checkpoint: Checkpoint) -> None:
        raise NotImplementedError

    async def list_checkpoints(self, pipeline_id: str) -> list[Checkpoint]:
        raise NotImplementedError


def _parse(raw: str | bytes, origin: str) -> Checkpoint | None:
    try:
        return Checkpoint.from_json(raw)
    except ValidationError as e:
        logger.warning("Skipping unreadable checkpoint %s: %s", origin, e.errors()[:1])
        return None


# ── File backend ─────────────────────────────────────────────────────────────


_SUFFIX = ".json"


def _write_atomic(path: Path, data: str) -> None:
    """Write ``data`` to a temp file, fsync it, then hard-link it into place.

    Linking fails with ``FileExistsError`` when ``path`` is already taken, so an
    existing checkpoint is never overwritten.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.link(tmp_name, path)
    finally:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)


def _sequence_of(path: Path) -> int | None:
    if path.suffix != _SUFFIX or not path.stem.isdigit():
        return None
    return int(path.stem)


class FileCheckpointStore(_LockingStore):
    """One JSON document per checkpoint under ``<directory>/<pipeline_id>/``."""

    def __init__(self, directory: str | Path):
        super().__init__()
        self.directory = Path(directory)

    def _pipeline_dir(self, pipeline_id: str) -> Path:
        return self.directory / pipeline_id

    def _sequence_files(self, pipeline_id: str) -> list[tuple[int, Path]]:
        pipeline_dir = self._pipeline_dir(pipeline_id)
        if not pipeline_dir.is_dir():
            return []
        found = []
        for path in pipeline_dir.iterdir():
            sequence = _sequence_of(path)
            if sequence is not None:
                found.append((sequence, path))
        found.sort()
        return found

    async def _next_sequence(self, pipeline_id: str) -> int:
        files = await asyncio.to_thread(self._sequence_files, pipeline_id)
        return files[-1][0] + 1 if files else 1

    async def _commit(self, checkpoint: Checkpoint) -> None:
        path = self._pipeline_dir(checkpoint.pipeline_id) / f"{checkpoint.sequence:08d}{_SUFFIX}"
        await asyncio.to_thread(_write_atomic, path, checkpoint.to_json())

    def _read(self, path: Path) -> Checkpoint | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Skipping unreadable checkpoint %s: %s", path, e)
            return None
        return _parse(raw, str(path))

    async def load_by_id(self, pipeline_id: str, sequence: int) -> Checkpoint | None:
        path = self._pipeline_dir(pipeline_id) / f"{sequence:08d}{_SUFFIX}"
        if not path.is_file():
            return None
        return await asyncio.to_thread(self._read, path)

    async def load_latest(self, pipeline_id: str) -> Checkpoint | None:
        # Walk backwards so a corrupt newest file falls back to the previous one
        files = await asyncio.to_thread(self._sequence_files, pipeline_id)
        for _, path in reversed(files):
            checkpoint = await asyncio.to_thread(self._read, path)
            if checkpoint is not None:
                return checkpoint
        return None

    async def list_checkpoints(self, pipeline_id: str) -> list[Checkpoint]:
        files = await asyncio.to_thread(self._sequence_files, pipeline_id)
        checkpoints = []
        for _, path in files:
            checkpoint = await asyncio.to_thread(self._read, path)
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints

    async def list_pipelines(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(
            p.name for p in self.directory.iterdir() if p.is_dir() and not p.name.startswith(".")
        )


# ── SQLite backend ───────────────────────────────────────────────────────────


class SqliteCheckpointStore(_LockingStore):
    """Append-only checkpoint table in SQLite.

    Takes an already-open aiosqlite connection. Call ``initialize()`` to create
    the table, or use ``SqliteCheckpointStore.open(path)`` which does both.
    """

    _write_errors = (OSError, aiosqlite.Error)

    def __init__(self, db: aiosqlite.Connection, *, owns_connection: bool = False):
        super().__init__()
        self._db = db
        self._owns_connection = owns_connection

    @classmethod
    async def open(cls, path: str | Path) -> SqliteCheckpointStore:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(path))
        store = cls(db, owns_connection=True)
        await store.initialize()
        return store

    async def initialize(self) -> None:
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Checkpoint table initialized")

    async def close(self) -> None:
        if self._owns_connection:
            await self._db.close()

    async def _next_sequence(self, pipeline_id: str) -> int:
        cursor = await self._db.execute(
            "SELECT COALESCE(MAX(sequence), 0) FROM checkpoints WHERE pipeline_id = ?",
            (pipeline_id,),
        )
        row = await cursor.fetchone()
        return int(row[0]) + 1

    async def _commit(self, checkpoint: Checkpoint) -> None:
        try:
            await self._db.execute(
                """
                INSERT INTO checkpoints (
                    pipeline_id, sequence, phase_name, pipeline_status, reason,
                    created_at, document
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    checkpoint.pipeline_id,
                    checkpoint.sequence,
                    checkpoint.phase_name,
                    checkpoint.pipeline_status.value,
                    checkpoint.reason.value,
                    checkpoint.timestamp.isoformat(),
                    checkpoint.to_json(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error:
            await self._db.rollback()
            raise

    async def load_by_id(self, pipeline_id: str, sequence: int) -> Checkpoint | None:
        cursor = await self._db.execute(
            "SELECT document FROM checkpoints WHERE pipeline_id = ? AND sequence = ?",
            (pipeline_id, sequence),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _parse(row[0], f"{pipeline_id}#{sequence}")

    async def load_latest(self, pipeline_id: str) -> Checkpoint | None:
        cursor = await self._db.execute(
            "SELECT sequence, document FROM checkpoints WHERE pipeline_id = ? ORDER BY sequence DESC",
            (pipeline_id,),
        )
        async for sequence, document in cursor:
            checkpoint = _parse(document, f"{pipeline_id}#{sequence}")
            if checkpoint is not None:
                return checkpoint
        return None

    async def list_checkpoints(self, pipeline_id: str) -> list[Checkpoint]:
        cursor = await self._db.execute(
            "SELECT sequence, document FROM checkpoints WHERE pipeline_id = ? ORDER BY sequence",
            (pipeline_id,),
        )
        rows = await cursor.fetchall()
        checkpoints = []
        for sequence, document in rows:
            checkpoint = _parse(document, f"{pipeline_id}#{sequence}")
            if checkpoint is not None:
                checkpoints.append(checkpoint)
        return checkpoints

    async def list_pipelines(self) -> list[str]:
        cursor = await self._db.execute(
            "SELECT DISTINCT pipeline_id FROM checkpoints ORDER BY pipeline_id"
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]


_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS checkpoints (
    pipeline_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    phase_name TEXT NOT NULL,
    pipeline_status TEXT NOT NULL,
    reason TEXT NOT NULL,
    created_at TEXT NOT NULL,
    document TEXT NOT NULL,
    PRIMARY KEY (pipeline_id, sequence)
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_reason ON checkpoints(pipeline_id, reason);
"""


# ── In-memory backend ────────────────────────────────────────────────────────


class MemoryCheckpointStore(_LockingStore):
    """Keeps serialized checkpoints in a dict. Nothing touches the filesystem."""

    def __init__(self) -> None:
        super().__init__()
        self._documents: dict[str, list[str]] = {}

    async def _next_sequence(self, pipeline_id: str) -> int:
        return len(self._documents.get(pipeline_id, [])) + 1

    async def _commit(self, checkpoint: Checkpoint) -> None:
        self._documents.setdefault(checkpoint.pipeline_id, []).append(checkpoint.to_json())

    async def load_by_id(self, pipeline_id: str, sequence: int) -> Checkpoint | None:
        documents = self._documents.get(pipeline_id, [])
        if not 1 <= sequence <= len(documents):
            return None
        return Checkpoint.from_json(documents[sequence - 1])

    async def list_checkpoints(self, pipeline_id: str) -> list[Checkpoint]:
        return [Checkpoint.from_json(d) for d in self._documents.get(pipeline_id, [])]

    async def list_pipelines(self) -> list[str]:
        return sorted(self._documents)
