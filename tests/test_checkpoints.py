"""Tests for the checkpoint stores (file, SQLite, memory).

Covers:
- Sequence assignment and per-pipeline isolation
- Concurrent saves serialized per pipeline
- Atomic file writes: leftover temp files and corrupt documents are skipped
- Existing checkpoints are never overwritten, even by a cancelled save
- Write failures surface as CheckpointWriteError
"""

from __future__ import annotations

import asyncio
import json
import os

import pytest
import pytest_asyncio

from kilo.errors import CheckpointWriteError
from kilo.pipeline.checkpoints import (
    FileCheckpointStore,
    MemoryCheckpointStore,
    SqliteCheckpointStore,
)
from kilo.pipeline.models import (
    AgentRole,
    Checkpoint,
    CheckpointReason,
    ExecutionMode,
    PhaseConfig,
    Pipeline,
    PipelineStatus,
    TaskStatus,
    TaskTemplate,
)


def make_pipeline(pipeline_id: str = "pl-test0001") -> Pipeline:
    phases = {
        "business": PhaseConfig(
            tasks=[
                TaskTemplate(description="requirements", role=AgentRole.ARCHITECT, payload={"step": "b1"}),
                TaskTemplate(description="personas", role=AgentRole.ARCHITECT),
            ]
        ),
        "models": PhaseConfig(tasks=[TaskTemplate(description="schema", role=AgentRole.ARCHITECT)]),
    }
    return Pipeline.build("Build a todo app", ExecutionMode.AUTO, phases, pipeline_id=pipeline_id)


def make_checkpoint(
    pipeline_id: str = "pl-test0001",
    reason: CheckpointReason = CheckpointReason.INTERVAL,
) -> Checkpoint:
    pipeline = make_pipeline(pipeline_id)
    pipeline.status = PipelineStatus.RUNNING
    return pipeline.snapshot(reason)


@pytest_asyncio.fixture(params=["file", "sqlite", "memory"])
async def any_store(request, tmp_path):
    if request.param == "file":
        yield FileCheckpointStore(tmp_path / "checkpoints")
    elif request.param == "sqlite":
        store = await SqliteCheckpointStore.open(tmp_path / "checkpoints" / "checkpoints.db")
        yield store
        await store.close()
    else:
        yield MemoryCheckpointStore()


# ── Shared behaviour ─────────────────────────────────────────────────────────


class TestSaveAndLoad:
    @pytest.mark.asyncio
    async def test_first_sequence_is_one(self, any_store):
        saved = await any_store.save(make_checkpoint())
        assert saved.sequence == 1

    @pytest.mark.asyncio
    async def test_sequences_are_monotonic(self, any_store):
        first = await any_store.save(make_checkpoint())
        second = await any_store.save(make_checkpoint(reason=CheckpointReason.PHASE_COMPLETE))
        assert (first.sequence, second.sequence) == (1, 2)

    @pytest.mark.asyncio
    async def test_save_does_not_touch_the_input(self, any_store):
        checkpoint = make_checkpoint()
        await any_store.save(checkpoint)
        assert checkpoint.sequence == 0

    @pytest.mark.asyncio
    async def test_load_latest(self, any_store):
        await any_store.save(make_checkpoint())
        await any_store.save(make_checkpoint(reason=CheckpointReason.PHASE_COMPLETE))
        latest = await any_store.load_latest("pl-test0001")
        assert latest is not None
        assert latest.sequence == 2
        assert latest.reason == CheckpointReason.PHASE_COMPLETE

    @pytest.mark.asyncio
    async def test_load_by_id(self, any_store):
        await any_store.save(make_checkpoint())
        await any_store.save(make_checkpoint(reason=CheckpointReason.ERROR))
        loaded = await any_store.load_by_id("pl-test0001", 1)
        assert loaded is not None
        assert loaded.reason == CheckpointReason.INTERVAL

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, any_store):
        assert await any_store.load_latest("pl-missing") is None
        assert await any_store.load_by_id("pl-missing", 1) is None
        await any_store.save(make_checkpoint())
        assert await any_store.load_by_id("pl-test0001", 9) is None

    @pytest.mark.asyncio
    async def test_list_is_ordered(self, any_store):
        for _ in range(3):
            await any_store.save(make_checkpoint())
        checkpoints = await any_store.list_checkpoints("pl-test0001")
        assert [c.sequence for c in checkpoints] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_pipelines_have_independent_sequences(self, any_store):
        await any_store.save(make_checkpoint("pl-aaaa"))
        await any_store.save(make_checkpoint("pl-aaaa"))
        other = await any_store.save(make_checkpoint("pl-bbbb"))
        assert other.sequence == 1
        assert await any_store.list_pipelines() == ["pl-aaaa", "pl-bbbb"]

    @pytest.mark.asyncio
    async def test_task_snapshots_survive_storage(self, any_store):
        checkpoint = make_checkpoint()
        await any_store.save(checkpoint)
        loaded = await any_store.load_latest("pl-test0001")
        assert loaded.task_snapshots == checkpoint.task_snapshots
        assert [p.name for p in loaded.phases] == ["business", "models"]
        assert loaded.objective == "Build a todo app"
        assert loaded.task_snapshots[0].payload == {"step": "b1"}

    @pytest.mark.asyncio
    async def test_concurrent_saves_get_unique_sequences(self, any_store):
        saved = await asyncio.gather(*(any_store.save(make_checkpoint()) for _ in range(10)))
        assert sorted(c.sequence for c in saved) == list(range(1, 11))
        assert len(await any_store.list_checkpoints("pl-test0001")) == 10


class TestSnapshotConsistency:
    @pytest.mark.asyncio
    async def test_running_task_is_persisted_as_pending(self, any_store):
        pipeline = make_pipeline()
        pipeline.status = PipelineStatus.RUNNING
        task = pipeline.phases[0].tasks[0]
        task.status = TaskStatus.RUNNING
        task.attempts = 2
        task.error = "transient"

        await any_store.save(pipeline.snapshot(CheckpointReason.INTERVAL))
        loaded = await any_store.load_latest(pipeline.id)
        snap = loaded.task_snapshots[0]
        assert snap.status == TaskStatus.PENDING
        assert snap.attempts == 0
        assert snap.error is None
        assert snap.result is None


# ── File backend ─────────────────────────────────────────────────────────────


class TestFileCheckpointStore:
    @pytest.mark.asyncio
    async def test_layout_and_wire_format(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save(make_checkpoint())

        path = tmp_path / "pl-test0001" / "00000001.json"
        assert path.is_file()
        doc = json.loads(path.read_text())
        assert doc["pipelineId"] == "pl-test0001"
        assert doc["sequence"] == 1
        assert doc["pipelineStatus"] == "RUNNING"
        assert doc["reason"] == "interval"
        assert doc["taskSnapshots"][0]["assignedRole"] == "architect"
        assert "phaseName" in doc["taskSnapshots"][0]

    @pytest.mark.asyncio
    async def test_leftover_temp_file_is_ignored(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save(make_checkpoint())

        # A crash between write and link leaves a partial temp file behind
        (tmp_path / "pl-test0001" / ".abc123.tmp").write_text('{"pipelineId": "pl-te')

        checkpoints = await store.list_checkpoints("pl-test0001")
        assert [c.sequence for c in checkpoints] == [1]
        nxt = await store.save(make_checkpoint())
        assert nxt.sequence == 2

    @pytest.mark.asyncio
    async def test_corrupt_latest_falls_back_to_previous(self, tmp_path, caplog):
        store = FileCheckpointStore(tmp_path)
        await store.save(make_checkpoint())
        (tmp_path / "pl-test0001" / "00000002.json").write_text("{not json")

        latest = await store.load_latest("pl-test0001")
        assert latest is not None
        assert latest.sequence == 1
        assert "Skipping unreadable checkpoint" in caplog.text

    @pytest.mark.asyncio
    async def test_corrupt_file_still_reserves_its_sequence(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        (tmp_path / "pl-test0001").mkdir()
        (tmp_path / "pl-test0001" / "00000001.json").write_text("")
        saved = await store.save(make_checkpoint())
        assert saved.sequence == 2

    @pytest.mark.asyncio
    async def test_failed_link_raises_write_error_and_leaves_nothing(self, tmp_path, monkeypatch):
        store = FileCheckpointStore(tmp_path)

        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "link", boom)
        with pytest.raises(CheckpointWriteError, match="disk full"):
            await store.save(make_checkpoint())
        monkeypatch.undo()

        assert list((tmp_path / "pl-test0001").iterdir()) == []
        assert await store.load_latest("pl-test0001") is None

    @pytest.mark.asyncio
    async def test_existing_checkpoint_is_never_overwritten(self, tmp_path, monkeypatch):
        store = FileCheckpointStore(tmp_path)
        await store.save(make_checkpoint())

        async def stale_sequence(pipeline_id):
            return 1

        monkeypatch.setattr(store, "_next_sequence", stale_sequence)
        with pytest.raises(CheckpointWriteError):
            await store.save(make_checkpoint(reason=CheckpointReason.ERROR))

        assert [p.name for p in (tmp_path / "pl-test0001").iterdir()] == ["00000001.json"]
        kept = await store.load_by_id("pl-test0001", 1)
        assert kept.reason == CheckpointReason.INTERVAL

    @pytest.mark.asyncio
    async def test_invalid_utf8_latest_falls_back_to_previous(self, tmp_path, caplog):
        store = FileCheckpointStore(tmp_path)
        await store.save(make_checkpoint())
        (tmp_path / "pl-test0001" / "00000002.json").write_bytes(b"\xff\xfe{garbage")

        latest = await store.load_latest("pl-test0001")
        assert latest is not None
        assert latest.sequence == 1
        assert [c.sequence for c in await store.list_checkpoints("pl-test0001")] == [1]
        assert await store.load_by_id("pl-test0001", 2) is None
        assert "Skipping unreadable checkpoint" in caplog.text

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_the_write(self, tmp_path):
        release = asyncio.Event()

        class SlowStore(FileCheckpointStore):
            async def _commit(self, checkpoint):
                await release.wait()
                await super()._commit(checkpoint)

        store = SlowStore(tmp_path)
        first = asyncio.ensure_future(store.save(make_checkpoint()))
        await asyncio.sleep(0.01)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        second = asyncio.ensure_future(store.save(make_checkpoint(reason=CheckpointReason.INTERRUPTED)))
        await asyncio.sleep(0.01)
        assert not second.done()
        release.set()
        saved = await second

        assert saved.sequence == 2
        checkpoints = await store.list_checkpoints("pl-test0001")
        assert [(c.sequence, c.reason) for c in checkpoints] == [
            (1, CheckpointReason.INTERVAL),
            (2, CheckpointReason.INTERRUPTED),
        ]

    @pytest.mark.asyncio
    async def test_list_pipelines_skips_hidden_dirs(self, tmp_path):
        store = FileCheckpointStore(tmp_path)
        await store.save(make_checkpoint())
        (tmp_path / ".trash").mkdir()
        assert await store.list_pipelines() == ["pl-test0001"]

    @pytest.mark.asyncio
    async def test_missing_directory_lists_nothing(self, tmp_path):
        store = FileCheckpointStore(tmp_path / "nope")
        assert await store.list_pipelines() == []
        assert await store.list_checkpoints("pl-test0001") == []


# ── SQLite backend ───────────────────────────────────────────────────────────


class TestSqliteCheckpointStore:
    @pytest_asyncio.fixture
    async def sqlite_store(self, tmp_path):
        store = await SqliteCheckpointStore.open(tmp_path / "cp.db")
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_document_column_holds_wire_json(self, sqlite_store):
        await sqlite_store.save(make_checkpoint())
        cursor = await sqlite_store._db.execute("SELECT reason, document FROM checkpoints")
        reason, document = await cursor.fetchone()
        assert reason == "interval"
        assert json.loads(document)["pipelineId"] == "pl-test0001"

    @pytest.mark.asyncio
    async def test_corrupt_row_is_skipped(self, sqlite_store):
        await sqlite_store.save(make_checkpoint())
        await sqlite_store._db.execute(
            "INSERT INTO checkpoints VALUES (?, ?, ?, ?, ?, ?, ?)",
            ("pl-test0001", 2, "business", "RUNNING", "interval", "2026-01-01", "{broken"),
        )
        await sqlite_store._db.commit()

        latest = await sqlite_store.load_latest("pl-test0001")
        assert latest.sequence == 1
        assert [c.sequence for c in await sqlite_store.list_checkpoints("pl-test0001")] == [1]

    @pytest.mark.asyncio
    async def test_reopen_keeps_history(self, tmp_path):
        store = await SqliteCheckpointStore.open(tmp_path / "cp.db")
        await store.save(make_checkpoint())
        await store.close()

        reopened = await SqliteCheckpointStore.open(tmp_path / "cp.db")
        saved = await reopened.save(make_checkpoint())
        await reopened.close()
        assert saved.sequence == 2
