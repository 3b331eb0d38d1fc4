"""
Per-execution JSON log kept next to the workflow file.

``WorkflowJsonLogger`` is an event sink. Attached to a pipeline started from
``.github/workflows/review.yml`` it maintains ``review.json`` in the same
directory: the overall status, plus one entry per finished step with its
timing, output and session ids. Resuming the same execution keeps the steps
already logged and appends to them.

Log layout::

    {
      "workflow_name": "Review",
      "workflow_file": "review.yml",
      "execution_id": "20261018-142501",
      "pipeline_id": "workflow-3f2a9c1b7d4e",
      "start_time": "...",
      "last_update_time": "...",
      "status": "running | paused | completed | failed | cancelled",
      "last_completed_step": 0,
      "total_steps": 2,
      "steps": [{"step_index": 0, "step_id": "analyse", "status": "completed", ...}]
    }

Example:
    >>> json_log = WorkflowJsonLogger(".github/workflows/review.yml")
    >>> runner = PipelineRunner(executor, event_sink=json_log)
"""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import structlog

from claude_runner.engine.events import (
    PipelineFinished,
    PipelinePaused,
    PipelineStarted,
    RunnerEvent,
    TaskStatusChanged,
)
from claude_runner.enums import TaskStatus
from claude_runner.exceptions import RateLimitError
from claude_runner.models.task import utc_now

log = structlog.get_logger(__name__)

_STEP_STATUS = {
    TaskStatus.COMPLETED: "completed",
    TaskStatus.ERROR: "failed",
    TaskStatus.SKIPPED: "skipped",
    TaskStatus.CANCELLED: "cancelled",
}


def json_log_path(workflow_path: str | Path) -> Path:
    """Location of the JSON log for a workflow file: same directory, ``.json`` suffix."""
    return Path(workflow_path).with_suffix(".json")


def _duration_ms(start: str, end: str) -> int:
    try:
        elapsed = datetime.fromisoformat(end) - datetime.fromisoformat(start)
    except ValueError:
        return 0
    return max(int(elapsed.total_seconds() * 1000), 0)


class WorkflowJsonLogger:
    """Event sink maintaining the JSON log of one workflow execution.

    Write failures are logged and never reach the pipeline.

    Args:
        workflow_path: Workflow file the pipeline was started from
    """

    def __init__(self, workflow_path: str | Path) -> None:
        self.workflow_path = Path(workflow_path)
        self.path = json_log_path(self.workflow_path)
        self._log: dict[str, Any] | None = None

    @property
    def current_log(self) -> dict[str, Any] | None:
        return self._log

    async def __call__(self, event: RunnerEvent) -> None:
        if isinstance(event, PipelineStarted):
            await self._start(event)
            return
        if self._log is None:
            return

        if isinstance(event, TaskStatusChanged):
            if event.status not in _STEP_STATUS:
                return
            self._log["steps"].append(self._step_entry(event))
            if event.status is TaskStatus.COMPLETED:
                self._log["last_completed_step"] = max(self._log["last_completed_step"], event.index)
        elif isinstance(event, PipelinePaused):
            self._log["status"] = "paused"
        elif isinstance(event, PipelineFinished):
            self._log["status"] = event.status.value
        else:
            return

        self._log["last_update_time"] = utc_now()
        await self._write()

    async def _start(self, event: PipelineStarted) -> None:
        if event.resumed:
            existing = await self._read()
            if existing is not None and existing.get("pipeline_id") == event.pipeline_id:
                existing["status"] = "running"
                existing["last_update_time"] = utc_now()
                self._log = existing
                await self._write()
                return
            log.warning("json_log_not_continued", path=str(self.path), pipeline_id=event.pipeline_id)

        now = datetime.now(UTC)
        self._log = {
            "workflow_name": event.name,
            "workflow_file": self.workflow_path.name,
            "execution_id": now.strftime("%Y%m%d-%H%M%S"),
            "pipeline_id": event.pipeline_id,
            "start_time": now.isoformat(),
            "last_update_time": now.isoformat(),
            "status": "running",
            "last_completed_step": -1,
            "total_steps": event.total_tasks,
            "steps": [],
        }
        await self._write()

    def _step_entry(self, event: TaskStatusChanged) -> dict[str, Any]:
        end_time = event.finished_at or event.timestamp
        start_time = event.started_at or end_time
        status = _STEP_STATUS[event.status]
        # a usage limit pauses the pipeline; the step runs again on resume
        if event.error and event.error.get("kind") == RateLimitError.kind:
            status = "paused"

        entry: dict[str, Any] = {
            "step_index": event.index,
            "step_id": event.step_id or event.task_id,
            "step_name": event.name or f"Step {event.index + 1}",
            "status": status,
            "start_time": start_time,
            "end_time": end_time,
            "duration_ms": _duration_ms(start_time, end_time),
            "output": event.results or "",
            "session_id": event.session_id or "",
            "output_session": event.output_session,
        }
        if event.resume_session:
            entry["resume_session"] = event.resume_session
        if event.skip_reason:
            entry["skip_reason"] = event.skip_reason
        if event.error:
            entry["error"] = event.error.get("message")
        return entry

    async def _read(self) -> dict[str, Any] | None:
        try:
            async with aiofiles.open(self.path) as f:
                data = json.loads(await f.read())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            log.warning("json_log_unreadable", path=str(self.path), error=str(e))
            return None
        return data if isinstance(data, dict) else None

    async def _write(self) -> None:
        payload = json.dumps(self._log, indent=2)
        tmp_path = self.path.with_name(f".{self.path.stem}.{uuid.uuid4().hex[:8]}.tmp")
        try:
            async with aiofiles.open(tmp_path, "w") as f:
                await f.write(payload)
            tmp_path.replace(self.path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            log.error("json_log_write_failed", path=str(self.path), error=str(e))
