"""Tests for claude_runner.engine.state_store."""

import asyncio
import json
import os
import time
from datetime import timedelta

import pytest

from claude_runner.engine.state_store import ExecutionStateStore
from claude_runner.enums import PauseReason, TaskStatus
from claude_runner.exceptions import StateStoreError
from claude_runner.models.task import TaskItem

# =============================================================================
# Save / Load
# =============================================================================


class TestSaveLoad:
    """Snapshot persistence round trips."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, state_store, make_state):
        state = make_state(
            TaskItem(id="a", prompt="one", status=TaskStatus.COMPLETED, session_id="sess-a", results="done"),
            TaskItem(id="b", prompt="two", resume_from_task_id="a"),
            variables={"inputs": {"target": "src"}},
        )

        await state_store.save(state)
        loaded = await state_store.load("pipeline-test")

        assert loaded is not None
        assert loaded.to_dict() == state.to_dict()
        assert loaded.tasks[0].session_id == "sess-a"
        assert loaded.tasks[1].resume_from_task_id == "a"
        assert loaded.current_index == 1

    @pytest.mark.asyncio
    async def test_load_missing_returns_none(self, state_store):
        assert await state_store.load("nothing-here") is None

    @pytest.mark.asyncio
    async def test_file_layout(self, state_store, make_state, temp_state_dir):
        await state_store.save(make_state(TaskItem(id="a", prompt="one")))

        assert [p.name for p in temp_state_dir.iterdir()] == ["pipeline-test.json"]
        data = json.loads((temp_state_dir / "pipeline-test.json").read_text())
        assert data["id"] == "pipeline-test"
        assert data["tasks"][0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_concurrent_saves_leave_one_valid_file(self, state_store, make_state, temp_state_dir):
        states = [make_state(TaskItem(id="a", prompt=f"prompt {i}")) for i in range(10)]

        await asyncio.gather(*(state_store.save(state) for state in states))

        assert [p.name for p in temp_state_dir.iterdir()] == ["pipeline-test.json"]
        loaded = await state_store.load("pipeline-test")
        assert loaded.tasks[0].prompt.startswith("prompt ")

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_raises(self, state_store, temp_state_dir):
        (temp_state_dir / "broken.json").write_text("{not json")

        with pytest.raises(StateStoreError, match="Corrupt snapshot"):
            await state_store.load("broken")

    @pytest.mark.parametrize("pipeline_id", ["../escape", ".hidden", "a/b", ""])
    @pytest.mark.asyncio
    async def test_invalid_ids_rejected(self, state_store, pipeline_id):
        with pytest.raises(StateStoreError, match="Invalid pipeline id"):
            await state_store.load(pipeline_id)

    def test_unusable_state_directory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")

        with pytest.raises(StateStoreError, match="Cannot create state directory"):
            ExecutionStateStore(blocker / "state")


# =============================================================================
# Pause / Resume
# =============================================================================


class TestPauseResume:
    """Paused snapshots and their preparation for another run."""

    @pytest.mark.asyncio
    async def test_pause_marks_snapshot(self, state_store, make_state):
        await state_store.save(make_state(TaskItem(id="a", prompt="one")))

        paused = await state_store.pause("pipeline-test", PauseReason.RATE_LIMIT, "2026-01-01T00:00:00+00:00")

        assert paused.paused is True
        assert paused.paused_at is not None
        loaded = await state_store.load("pipeline-test")
        assert loaded.pause_reason is PauseReason.RATE_LIMIT
        assert loaded.paused_until == "2026-01-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_pause_without_snapshot(self, state_store):
        with pytest.raises(StateStoreError, match="No snapshot to pause"):
            await state_store.pause("pipeline-test")

    @pytest.mark.asyncio
    async def test_resume_restarts_running_tasks(self, state_store, make_state):
        state = make_state(
            TaskItem(id="a", prompt="one", status=TaskStatus.COMPLETED, session_id="sess-a"),
            TaskItem(id="b", prompt="two", status=TaskStatus.RUNNING, started_at="2026-01-01T00:00:00+00:00"),
            TaskItem(id="c", prompt="three"),
        )
        await state_store.save(state)
        await state_store.pause("pipeline-test", PauseReason.INTERRUPTED)

        resumed = await state_store.resume("pipeline-test")

        assert resumed.paused is False
        assert resumed.pause_reason is None
        assert resumed.tasks[0].status is TaskStatus.COMPLETED
        assert resumed.tasks[0].session_id == "sess-a"
        assert resumed.tasks[1].status is TaskStatus.PENDING
        assert resumed.tasks[1].attempt == 2
        assert resumed.tasks[1].started_at is None
        assert resumed.current_index == 1
        assert (await state_store.load("pipeline-test")).paused is False

    @pytest.mark.asyncio
    async def test_resume_snapshot_left_by_crashed_process(self, state_store, make_state):
        state = make_state(
            TaskItem(id="a", prompt="one", status=TaskStatus.COMPLETED, session_id="sess-a"),
            TaskItem(id="b", prompt="two", status=TaskStatus.RUNNING, started_at="2026-01-01T00:00:00+00:00"),
        )
        await state_store.save(state)

        resumed = await state_store.resume("pipeline-test")

        assert resumed.paused is False
        assert resumed.tasks[0].status is TaskStatus.COMPLETED
        assert resumed.tasks[1].status is TaskStatus.PENDING
        assert resumed.tasks[1].attempt == 2
        assert resumed.current_index == 1

    @pytest.mark.asyncio
    async def test_resume_missing_snapshot(self, state_store):
        with pytest.raises(StateStoreError, match="No snapshot to resume"):
            await state_store.resume("pipeline-test")


# =============================================================================
# Listing, deletion, cleanup
# =============================================================================


class TestListing:
    """Resumable listings and housekeeping."""

    @pytest.mark.asyncio
    async def test_list_most_recent_first(self, state_store, make_state):
        for pipeline_id, paused_at in [("older", "2026-01-01T00:00:00+00:00"), ("newer", "2026-02-01T00:00:00+00:00")]:
            state = make_state(TaskItem(id="a", prompt="one"), id=pipeline_id, paused=True, paused_at=paused_at)
            await state_store.save(state)

        summaries = await state_store.list()

        assert [s.id for s in summaries] == ["newer", "older"]
        assert summaries[0].total_tasks == 1
        assert summaries[0].to_dict()["paused_at"] == "2026-02-01T00:00:00+00:00"

    @pytest.mark.asyncio
    async def test_list_includes_unpaused_snapshot_as_interrupted(self, state_store, make_state):
        await state_store.save(make_state(TaskItem(id="a", prompt="one"), id="crashed"))
        saved = await state_store.load("crashed")

        summaries = await state_store.list()

        assert [s.id for s in summaries] == ["crashed"]
        assert summaries[0].pause_reason is PauseReason.INTERRUPTED
        assert summaries[0].paused_at == saved.updated_at

    @pytest.mark.asyncio
    async def test_unreadable_snapshots_are_skipped(self, state_store, make_state, temp_state_dir):
        await state_store.save(make_state(TaskItem(id="a", prompt="one"), paused=True))
        (temp_state_dir / "broken.json").write_text("[]")

        states = await state_store.list_states()

        assert [s.id for s in states] == ["pipeline-test"]

    @pytest.mark.asyncio
    async def test_delete(self, state_store, make_state):
        await state_store.save(make_state(TaskItem(id="a", prompt="one")))

        assert await state_store.delete("pipeline-test") is True
        assert await state_store.delete("pipeline-test") is False
        assert await state_store.load("pipeline-test") is None

    @pytest.mark.asyncio
    async def test_cleanup_old_states(self, state_store, make_state, temp_state_dir):
        await state_store.save(make_state(TaskItem(id="a", prompt="one"), id="stale"))
        await state_store.save(make_state(TaskItem(id="a", prompt="one"), id="fresh"))
        old = time.time() - timedelta(days=10).total_seconds()
        os.utime(temp_state_dir / "stale.json", (old, old))

        removed = await state_store.cleanup_old_states(timedelta(days=7))

        assert removed == ["stale"]
        assert await state_store.load("fresh") is not None
