"""
Durable execution snapshots for pause, resume and crash recovery.

Each execution gets one JSON file, ``<state_dir>/<pipeline_id>.json``,
following the schema in ``claude_runner.engine.types``. Integrity rests on:

- Atomic writes: a uniquely named temporary file is written, then renamed
  over the target
- Per-pipeline asyncio locks so concurrent saves of one execution serialize
- A meta-lock guarding lock creation

Example:
    >>> store = ExecutionStateStore(".claude-runner/state")
    >>> await store.save(state)
    >>> [summary.id for summary in await store.list()]
    ['pipeline-3f2a9c1b7d4e']
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path

import aiofiles
import structlog

from claude_runner.enums import PauseReason, TaskStatus
from claude_runner.exceptions import StateStoreError
from claude_runner.models.task import PipelineExecutionState, ResumableSummary, utc_now

log = structlog.get_logger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.\-]+$")


class ExecutionStateStore:
    """Persist ``PipelineExecutionState`` snapshots as JSON files.

    Attributes:
        state_dir: Directory holding one file per execution
    """

    def __init__(self, state_dir: str | Path) -> None:
        self.state_dir = Path(state_dir)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StateStoreError(f"Cannot create state directory {self.state_dir}: {e}") from e
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, pipeline_id: str) -> asyncio.Lock:
        async with self._locks_lock:
            if pipeline_id not in self._locks:
                self._locks[pipeline_id] = asyncio.Lock()
            return self._locks[pipeline_id]

    def _get_state_path(self, pipeline_id: str) -> Path:
        if not _SAFE_ID.match(pipeline_id) or pipeline_id.startswith("."):
            raise StateStoreError("Invalid pipeline id", pipeline_id=pipeline_id)
        return self.state_dir / f"{pipeline_id}.json"

    async def save(self, state: PipelineExecutionState) -> None:
        """Atomically write the snapshot for ``state.id``.

        The state is serialized before the first await, so the file always
        reflects one consistent moment even while the pipeline keeps running.

        Raises:
            StateStoreError: If the snapshot cannot be written
        """
        state.updated_at = utc_now()
        state.current_index = state.first_pending_index()
        payload = json.dumps(state.to_dict(), indent=2)

        path = self._get_state_path(state.id)
        lock = await self._get_lock(state.id)
        async with lock:
            await self._write(path, payload, state.id)
        log.debug("snapshot_saved", pipeline_id=state.id, current_index=state.current_index, paused=state.paused)

    async def _write(self, path: Path, payload: str, pipeline_id: str) -> None:
        tmp_path = path.with_name(f".{path.stem}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(payload)
            # Atomic rename - safe on POSIX when same filesystem
            tmp_path.replace(path)
        except OSError as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise StateStoreError(f"Failed to write snapshot: {e}", pipeline_id=pipeline_id) from e

    async def load(self, pipeline_id: str) -> PipelineExecutionState | None:
        """Read a snapshot, or None when none exists.

        Raises:
            StateStoreError: If the file exists but cannot be read or decoded
        """
        path = self._get_state_path(pipeline_id)
        lock = await self._get_lock(pipeline_id)
        async with lock:
            return await self._read(path, pipeline_id)

    async def _read(self, path: Path, pipeline_id: str) -> PipelineExecutionState | None:
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path) as f:
                content = await f.read()
        except OSError as e:
            raise StateStoreError(f"Cannot read snapshot: {e}", pipeline_id=pipeline_id) from e
        try:
            data = json.loads(content)
            return PipelineExecutionState.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"Corrupt snapshot: {e}", pipeline_id=pipeline_id) from e

    async def pause(
        self,
        pipeline_id: str,
        reason: PauseReason = PauseReason.MANUAL,
        paused_until: str | None = None,
    ) -> PipelineExecutionState:
        """Mark a stored snapshot as paused.

        Raises:
            StateStoreError: If no snapshot exists or it cannot be updated
        """
        path = self._get_state_path(pipeline_id)
        lock = await self._get_lock(pipeline_id)
        async with lock:
            state = await self._read(path, pipeline_id)
            if state is None:
                raise StateStoreError("No snapshot to pause", pipeline_id=pipeline_id)
            state.paused = True
            state.paused_at = utc_now()
            state.pause_reason = reason
            state.paused_until = paused_until
            state.updated_at = utc_now()
            state.current_index = state.first_pending_index()
            await self._write(path, json.dumps(state.to_dict(), indent=2), pipeline_id)
        log.info("snapshot_paused", pipeline_id=pipeline_id, reason=str(reason))
        return state

    async def resume(self, pipeline_id: str) -> PipelineExecutionState:
        """Load a snapshot and prepare it to run again.

        A snapshot that was never marked paused was left behind by a process
        that died mid-run; it resumes as an interrupted pause. Tasks left
        ``running`` are replaced with a fresh pending attempt. Session ids of
        completed tasks are kept as is.

        The store does not know which pipelines are live in this process;
        callers must not resume an id that is still being executed.

        Raises:
            StateStoreError: If no snapshot exists
        """
        path = self._get_state_path(pipeline_id)
        lock = await self._get_lock(pipeline_id)
        async with lock:
            state = await self._read(path, pipeline_id)
            if state is None:
                raise StateStoreError("No snapshot to resume", pipeline_id=pipeline_id)
            if not state.paused:
                log.warning("snapshot_resumed_after_crash", pipeline_id=pipeline_id, updated_at=state.updated_at)

            state.tasks = [
                task.new_attempt() if task.status is TaskStatus.RUNNING else task for task in state.tasks
            ]
            state.paused = False
            state.pause_reason = None
            state.paused_until = None
            state.updated_at = utc_now()
            state.current_index = state.first_pending_index()
            await self._write(path, json.dumps(state.to_dict(), indent=2), pipeline_id)

        log.info("snapshot_resumed", pipeline_id=pipeline_id, current_index=state.current_index)
        return state

    async def delete(self, pipeline_id: str) -> bool:
        """Remove a snapshot irreversibly.

        Returns:
            True if a snapshot was removed, False if none existed
        """
        path = self._get_state_path(pipeline_id)
        lock = await self._get_lock(pipeline_id)
        async with lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                raise StateStoreError(f"Failed to delete snapshot: {e}", pipeline_id=pipeline_id) from e
        log.info("snapshot_deleted", pipeline_id=pipeline_id)
        return True

    async def list_states(self) -> list[PipelineExecutionState]:
        """Every readable snapshot; unreadable files are skipped with a warning."""
        states = []
        for state_file in sorted(self.state_dir.glob("*.json")):
            pipeline_id = state_file.stem
            try:
                state = await self.load(pipeline_id)
            except StateStoreError as e:
                log.warning("snapshot_unreadable", pipeline_id=pipeline_id, error=e.message)
                continue
            if state is not None:
                states.append(state)
        return states

    async def list(self) -> list[ResumableSummary]:
        """Resumable executions, most recently paused first.

        Snapshots that were never marked paused are listed as ``interrupted``,
        stamped with their last update.
        """
        summaries = [
            ResumableSummary(
                id=state.id,
                name=state.name,
                paused_at=state.paused_at if state.paused else state.updated_at,
                pause_reason=state.pause_reason if state.paused else PauseReason.INTERRUPTED,
                current_index=state.current_index,
                total_tasks=len(state.tasks),
            )
            for state in await self.list_states()
        ]
        summaries.sort(key=lambda s: s.paused_at or "", reverse=True)
        return summaries

    async def cleanup_old_states(self, max_age: timedelta = timedelta(days=7)) -> list[str]:
        """Delete snapshots not updated within ``max_age``.

        Returns:
            Ids of the removed snapshots
        """
        cutoff = datetime.now(UTC) - max_age
        removed = []
        for state_file in self.state_dir.glob("*.json"):
            modified = datetime.fromtimestamp(os.path.getmtime(state_file), UTC)
            if modified < cutoff and await self.delete(state_file.stem):
                removed.append(state_file.stem)
        if removed:
            log.info("snapshots_cleaned_up", count=len(removed), max_age_days=max_age.days)
        return removed
