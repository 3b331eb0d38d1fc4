"""Type definitions for persisted execution snapshots.

These TypedDicts describe the JSON written by ``ExecutionStateStore`` to
``<state_dir>/<pipeline_id>.json``. Enum-valued fields are stored as their
string values.

Example:
    A snapshot paused after its first task::

        state: PipelineState = {
            "id": "pipeline-3f2a9c1b7d4e",
            "name": "Review pipeline",
            "tasks": [
                {"id": "analyse", "prompt": "Analyse", "status": "completed",
                 "session_id": "9d1c...", ...},
                {"id": "fix", "prompt": "Fix", "status": "pending", ...},
            ],
            "current_index": 1,
            "paused": True,
            "pause_reason": "manual",
            "created_at": "2025-03-02T10:30:00+00:00",
            "updated_at": "2025-03-02T10:31:12+00:00",
            ...
        }
"""

from typing import Any, NotRequired, TypedDict


class TaskErrorRecord(TypedDict):
    """Structured error attached to a task in ``error`` status."""

    kind: str
    """One of cli_unavailable, run_failure, chain_resolution, cancelled, rate_limited."""

    message: str
    task_id: str | None
    step_id: str | None

    phase: str | None
    """Where the failure happened: condition, chain, spawn, run or cancel."""

    suggestion: NotRequired[str | None]
    exit_code: NotRequired[int | None]
    reference: NotRequired[str | None]
    reset_at: NotRequired[str | None]


class TaskItemState(TypedDict):
    """One task attempt inside a snapshot."""

    id: str
    prompt: str
    name: str | None
    model: str | None

    status: str
    """pending, running, completed, error, skipped or cancelled.

    A task stored as running belongs to a process that was interrupted; it is
    replaced by a fresh pending attempt when the snapshot is resumed.
    """

    resume_from_task_id: str | None
    resume_previous: bool
    output_session: bool
    allow_all_tools: bool | None
    check: str | None
    condition: str
    working_directory: str | None
    step_id: str | None
    job_id: str | None
    results: str | None

    session_id: str | None
    """Conversation id reported by the CLI; reused verbatim on resume."""

    skip_reason: str | None
    error: TaskErrorRecord | dict[str, Any] | None
    execution_time_ms: int | None
    attempt: int
    started_at: str | None
    finished_at: str | None


class PipelineState(TypedDict):
    """Complete snapshot of one pipeline execution."""

    id: str
    name: str
    tasks: list[TaskItemState]

    current_index: int
    """Index of the first non-terminal task, or ``len(tasks)`` when none remain."""

    paused: bool
    created_at: str
    updated_at: str
    paused_at: str | None

    pause_reason: str | None
    """manual, rate_limit or interrupted."""

    paused_until: str | None
    """Usage-limit reset time when pause_reason is rate_limit."""

    model: str
    working_directory: str
    output_format: str
    parallel_tasks_count: int

    variables: dict[str, dict[str, str]]
    """Template values keyed by namespace (``inputs``, ``env``)."""

    source: str
    """``tasks`` for ad hoc lists, ``workflow`` for parsed documents."""

    workflow_path: str | None
    """Workflow file the execution was started from, when it came from one."""


__all__ = [
    "PipelineState",
    "TaskErrorRecord",
    "TaskItemState",
]
