"""Domain models: immutable workflow documents and mutable runtime tasks."""

from claude_runner.models.task import (
    PipelineExecutionState,
    PipelineOutcome,
    ResumableSummary,
    TaskItem,
    TaskOptions,
    TaskResult,
)
from claude_runner.models.workflow import Job, Step, StepParameters, Workflow

__all__ = [
    "Job",
    "PipelineExecutionState",
    "PipelineOutcome",
    "ResumableSummary",
    "Step",
    "StepParameters",
    "TaskItem",
    "TaskOptions",
    "TaskResult",
    "Workflow",
]
