"""
Runtime models for task execution.

``TaskItem`` is the mutable runtime counterpart of a workflow step. One
instance exists per execution attempt and only the pipeline runner changes
its status, through ``transition()`` which enforces the state machine.
``PipelineExecutionState`` bundles the ordered tasks with everything needed
to resume the execution in another process.
"""

from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from claude_runner.enums import (
    ConditionType,
    OutputFormat,
    PauseReason,
    PipelineStatus,
    TaskOutcome,
    TaskStatus,
)
from claude_runner.engine.types import PipelineState, TaskItemState
from claude_runner.exceptions import InvalidTransitionError

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.RUNNING, TaskStatus.SKIPPED, TaskStatus.ERROR, TaskStatus.CANCELLED}
    ),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.CANCELLED}),
}


def utc_now() -> str:
    return datetime.now(UTC).isoformat()


def new_pipeline_id(prefix: str = "pipeline") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass
class TaskOptions:
    """Per-invocation flags forwarded to the CLI."""

    output_format: OutputFormat = OutputFormat.JSON
    resume_session: str | None = None
    continue_conversation: bool = False
    allow_all_tools: bool = False
    max_turns: int | None = None
    verbose: bool = False
    system_prompt: str | None = None
    append_system_prompt: str | None = None
    allowed_tools: list[str] = field(default_factory=list)
    disallowed_tools: list[str] = field(default_factory=list)
    mcp_config: str | None = None
    permission_prompt_tool: str | None = None


@dataclass
class TaskResult:
    """Result of one CLI invocation.

    ``output`` holds the assistant's answer: the ``result`` field of the JSON
    payload when a structured format was requested, raw stdout otherwise.
    """

    success: bool
    output: str
    error_output: str = ""
    execution_time_ms: int = 0
    session_id: str | None = None
    exit_code: int | None = None
    outcome: TaskOutcome = TaskOutcome.SUCCEEDED
    error: str | None = None
    rate_limit_reset: datetime | None = None
    task_id: str | None = None


@dataclass
class TaskItem:
    """One attempt at running a task."""

    id: str
    prompt: str
    name: str | None = None
    model: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    resume_from_task_id: str | None = None
    resume_previous: bool = False
    output_session: bool = True
    allow_all_tools: bool | None = None
    check: str | None = None
    condition: ConditionType = ConditionType.ALWAYS
    working_directory: str | None = None
    step_id: str | None = None
    job_id: str | None = None
    results: str | None = None
    session_id: str | None = None
    skip_reason: str | None = None
    error: dict[str, Any] | None = None
    execution_time_ms: int | None = None
    attempt: int = 1
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def transition(self, status: TaskStatus) -> None:
        """Move to ``status``, stamping start and finish times.

        Raises:
            InvalidTransitionError: If the move is not allowed from the current status
        """
        if status not in _ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(self.id, self.status.value, status.value)
        self.status = status
        if status is TaskStatus.RUNNING:
            self.started_at = utc_now()
        elif status.is_terminal:
            self.finished_at = utc_now()

    def new_attempt(self) -> TaskItem:
        """Fresh pending copy of this task with the attempt counter bumped."""
        return dataclasses.replace(
            self,
            status=TaskStatus.PENDING,
            results=None,
            session_id=None,
            skip_reason=None,
            error=None,
            execution_time_ms=None,
            attempt=self.attempt + 1,
            started_at=None,
            finished_at=None,
        )

    def to_dict(self) -> TaskItemState:
        data = dataclasses.asdict(self)
        data["status"] = self.status.value
        data["condition"] = self.condition.value
        return data  # type: ignore[return-value]

    @classmethod
    def from_dict(cls, data: TaskItemState | dict[str, Any]) -> TaskItem:
        known = {f.name for f in dataclasses.fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        values["status"] = TaskStatus(values.get("status", TaskStatus.PENDING))
        values["condition"] = ConditionType(values.get("condition") or ConditionType.ALWAYS)
        return cls(**values)


@dataclass
class PipelineExecutionState:
    """Everything needed to continue an execution, possibly in another process."""

    id: str
    name: str
    tasks: list[TaskItem]
    current_index: int = 0
    paused: bool = False
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    paused_at: str | None = None
    pause_reason: PauseReason | None = None
    paused_until: str | None = None
    model: str = "auto"
    working_directory: str = "."
    output_format: OutputFormat = OutputFormat.JSON
    parallel_tasks_count: int = 1
    variables: dict[str, dict[str, str]] = field(default_factory=dict)
    source: str = "tasks"
    workflow_path: str | None = None

    def first_pending_index(self) -> int:
        for index, task in enumerate(self.tasks):
            if not task.is_terminal:
                return index
        return len(self.tasks)

    def find_task(self, task_id: str) -> tuple[int, TaskItem] | None:
        for index, task in enumerate(self.tasks):
            if task.id == task_id:
                return index, task
        return None

    def to_dict(self) -> PipelineState:
        return {
            "id": self.id,
            "name": self.name,
            "tasks": [task.to_dict() for task in self.tasks],
            "current_index": self.current_index,
            "paused": self.paused,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "paused_at": self.paused_at,
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "paused_until": self.paused_until,
            "model": self.model,
            "working_directory": self.working_directory,
            "output_format": self.output_format.value,
            "parallel_tasks_count": self.parallel_tasks_count,
            "variables": self.variables,
            "source": self.source,
            "workflow_path": self.workflow_path,
        }

    @classmethod
    def from_dict(cls, data: PipelineState | dict[str, Any]) -> PipelineExecutionState:
        pause_reason = data.get("pause_reason")
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            tasks=[TaskItem.from_dict(task) for task in data.get("tasks", [])],
            current_index=int(data.get("current_index", 0)),
            paused=bool(data.get("paused", False)),
            created_at=data.get("created_at") or utc_now(),
            updated_at=data.get("updated_at") or utc_now(),
            paused_at=data.get("paused_at"),
            pause_reason=PauseReason(pause_reason) if pause_reason else None,
            paused_until=data.get("paused_until"),
            model=data.get("model") or "auto",
            working_directory=data.get("working_directory") or ".",
            output_format=OutputFormat(data.get("output_format") or OutputFormat.JSON),
            parallel_tasks_count=int(data.get("parallel_tasks_count", 1)),
            variables=dict(data.get("variables") or {}),
            source=data.get("source") or "tasks",
            workflow_path=data.get("workflow_path"),
        )


@dataclass
class ResumableSummary:
    """Listing entry for a paused execution."""

    id: str
    name: str
    paused_at: str | None
    pause_reason: PauseReason | None = None
    current_index: int = 0
    total_tasks: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "paused_at": self.paused_at,
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "current_index": self.current_index,
            "total_tasks": self.total_tasks,
        }


@dataclass
class PipelineOutcome:
    """What a pipeline run returned to its caller."""

    pipeline_id: str
    status: PipelineStatus
    tasks: list[TaskItem]
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is PipelineStatus.COMPLETED

    def task(self, task_id: str) -> TaskItem:
        for item in self.tasks:
            if item.id == task_id:
                return item
        raise KeyError(task_id)
