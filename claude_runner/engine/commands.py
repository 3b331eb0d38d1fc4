"""
Typed commands accepted by the engine service.

A host (an editor extension, a web panel, the CLI) sends plain JSON payloads.
``parse_command`` validates them against a discriminated union on ``kind``
before anything runs, so malformed input never reaches the runner.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from claude_runner.enums import ConditionType, OutputFormat
from claude_runner.exceptions import CommandValidationError, UnknownCommandError
from claude_runner.models.task import TaskItem


class TaskSpec(BaseModel):
    """One ad hoc task as sent by a host; accepts snake_case or camelCase keys."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., min_length=1, description="Task identifier, unique within the list")
    prompt: str = Field(..., min_length=1, description="Prompt sent to the CLI")
    name: str | None = Field(default=None, description="Display name")
    model: str | None = Field(default=None, description="Model override; None uses the pipeline model")
    resume_from_task_id: str | None = Field(default=None, description="Continue the session of this earlier task")
    resume_previous: bool = Field(default=False, description="Continue the session of the previous completed task")
    output_session: bool = Field(default=True, description="Expose the session id to later tasks")
    allow_all_tools: bool | None = Field(default=None, description="Skip permission prompts for this task")
    check: str | None = Field(default=None, description="Shell command gating a conditional task")
    condition: ConditionType = Field(default=ConditionType.ALWAYS, description="When the task runs")
    working_directory: str | None = Field(default=None, description="Directory override, relative to the pipeline")

    def to_task(self) -> TaskItem:
        return TaskItem(
            id=self.id,
            prompt=self.prompt,
            name=self.name,
            model=self.model,
            resume_from_task_id=self.resume_from_task_id,
            resume_previous=self.resume_previous,
            output_session=self.output_session,
            allow_all_tools=self.allow_all_tools,
            check=self.check,
            condition=self.condition,
            working_directory=self.working_directory,
        )


class _Command(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class RunTasksCommand(_Command):
    kind: Literal["runTasks"] = "runTasks"
    tasks: list[TaskSpec] = Field(..., min_length=1)
    name: str | None = None
    model: str | None = None
    output_format: OutputFormat = OutputFormat.JSON
    working_directory: str | None = None
    parallel_tasks_count: int | None = Field(default=None, ge=1, le=8)


class RunWorkflowCommand(_Command):
    kind: Literal["runWorkflow"] = "runWorkflow"
    workflow: str = Field(..., min_length=1, description="Path to a workflow file, or the YAML text itself")
    inputs: dict[str, str] = Field(default_factory=dict)
    working_directory: str | None = None
    parallel_tasks_count: int | None = Field(default=None, ge=1, le=8)


class PausePipelineCommand(_Command):
    kind: Literal["pausePipeline"] = "pausePipeline"
    pipeline_id: str


class ResumePipelineCommand(_Command):
    kind: Literal["resumePipeline"] = "resumePipeline"
    pipeline_id: str


class CancelTaskCommand(_Command):
    kind: Literal["cancelTask"] = "cancelTask"
    pipeline_id: str | None = None


class CancelWorkflowCommand(_Command):
    kind: Literal["cancelWorkflow"] = "cancelWorkflow"
    pipeline_id: str | None = None


class DeleteWorkflowStateCommand(_Command):
    kind: Literal["deleteWorkflowState"] = "deleteWorkflowState"
    pipeline_id: str


class GetResumableWorkflowsCommand(_Command):
    kind: Literal["getResumableWorkflows"] = "getResumableWorkflows"


RunnerCommand = Annotated[
    RunTasksCommand
    | RunWorkflowCommand
    | PausePipelineCommand
    | ResumePipelineCommand
    | CancelTaskCommand
    | CancelWorkflowCommand
    | DeleteWorkflowStateCommand
    | GetResumableWorkflowsCommand,
    Field(discriminator="kind"),
]
RunnerCommandAdapter: TypeAdapter[RunnerCommand] = TypeAdapter(RunnerCommand)

COMMAND_KINDS = frozenset(
    {
        "runTasks",
        "runWorkflow",
        "pausePipeline",
        "resumePipeline",
        "cancelTask",
        "cancelWorkflow",
        "deleteWorkflowState",
        "getResumableWorkflows",
    }
)


def parse_command(payload: dict[str, Any] | str) -> RunnerCommand:
    """Validate a command payload given as a mapping or a JSON string.

    Raises:
        UnknownCommandError: If ``kind`` is missing or not a known command
        CommandValidationError: If the payload does not fit its command
    """
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise CommandValidationError("unknown", f"payload is not valid JSON: {e}") from e

    kind = payload.get("kind") if isinstance(payload, dict) else None
    if not isinstance(kind, str) or kind not in COMMAND_KINDS:
        raise UnknownCommandError(kind)
    try:
        return RunnerCommandAdapter.validate_python(payload)
    except ValidationError as e:
        raise CommandValidationError(kind, _summarise(e)) from e


def _summarise(error: ValidationError) -> str:
    parts = []
    for detail in error.errors():
        # first location entry is the union tag
        location = ".".join(str(part) for part in detail["loc"][1:]) or "payload"
        parts.append(f"{location}: {detail['msg']}")
    return "; ".join(parts)
