"""Custom exception hierarchy for claude-runner.

Errors split into two families. Document and configuration problems
(parse, validation, configuration) surface immediately to the caller and
nothing runs. Task-level problems derive from ``TaskError``; the pipeline
runner records them on the failing task instead of raising, so one broken
step never takes down the coordinator.

Exception Hierarchy:
    ClaudeRunnerError (base)
    ├── ConfigurationError
    ├── WorkflowParseError
    ├── WorkflowValidationError
    ├── InvalidTransitionError
    ├── StateStoreError
    ├── WorkflowError
    ├── CommandError
    │   ├── UnknownCommandError
    │   └── CommandValidationError
    └── TaskError
        ├── CLIUnavailableError
        ├── RunFailureError
        ├── ChainResolutionError
        ├── TaskCancelledError
        └── RateLimitError

Example Usage:
    >>> from claude_runner.exceptions import WorkflowParseError
    >>> try:
    ...     workflow = parser.parse(text)
    ... except WorkflowParseError as e:
    ...     print(e.message)
"""

from datetime import datetime
from typing import Any


class ClaudeRunnerError(Exception):
    """Base exception for all claude-runner errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(ClaudeRunnerError):
    """Settings file missing, unreadable or invalid."""

    pass


class WorkflowParseError(ClaudeRunnerError):
    """Workflow document is not well-formed YAML or not a mapping.

    Attributes:
        source: Path or short description of the document that failed
    """

    def __init__(self, message: str, source: str | None = None) -> None:
        self.source = source
        full_message = f"{message} (source: {source})" if source else message
        super().__init__(full_message)
        self.message = message


class WorkflowValidationError(ClaudeRunnerError):
    """Workflow or task list is well-formed but semantically invalid.

    Validation is all-or-nothing: every problem found is collected in
    ``errors`` and the first one becomes the message.

    Attributes:
        errors: All validation problems, in document order
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or [message]
        full_message = message
        if len(self.errors) > 1:
            full_message = f"{message} (and {len(self.errors) - 1} more)"
        super().__init__(full_message)
        self.message = message


class InvalidTransitionError(ClaudeRunnerError):
    """A task status change that would move backwards or skip the state machine."""

    def __init__(self, task_id: str, current: str, requested: str) -> None:
        self.task_id = task_id
        self.current = current
        self.requested = requested
        super().__init__(f"Task {task_id} cannot move from {current} to {requested}")


class StateStoreError(ClaudeRunnerError):
    """Reading or writing a persisted execution snapshot failed.

    Attributes:
        pipeline_id: Execution whose snapshot was involved
    """

    def __init__(self, message: str, pipeline_id: str | None = None) -> None:
        self.pipeline_id = pipeline_id
        full_message = f"{message} (pipeline: {pipeline_id})" if pipeline_id else message
        super().__init__(full_message)
        self.message = message


class WorkflowError(ClaudeRunnerError):
    """Pipeline-level operation refused.

    Examples:
        - Pausing a pipeline that is not running
        - Resuming a pipeline with no stored snapshot
        - Starting a pipeline id that is already active
    """

    pass


class CommandError(ClaudeRunnerError):
    """Base class for rejected command payloads."""

    pass


class UnknownCommandError(CommandError):
    """Command payload carries a missing or unrecognised ``kind``."""

    def __init__(self, kind: Any) -> None:
        self.kind = kind
        super().__init__(f"Unknown command kind: {kind!r}")


class CommandValidationError(CommandError):
    """Command kind is known but its payload is invalid."""

    def __init__(self, kind: str, detail: str) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(f"Invalid {kind} command: {detail}")
        self.message = detail


# =============================================================================
# Task Errors
# =============================================================================


class TaskError(ClaudeRunnerError):
    """Failure attributable to a single task.

    Attributes:
        task_id: Runtime task identifier
        step_id: Workflow step identifier the task was created from
        phase: Where the failure happened (condition, chain, spawn, run, cancel)
    """

    kind = "task_error"

    def __init__(
        self,
        message: str,
        task_id: str | None = None,
        step_id: str | None = None,
        phase: str | None = None,
    ) -> None:
        self.task_id = task_id
        self.step_id = step_id
        self.phase = phase

        parts = [message]
        if task_id:
            parts.append(f"task: {task_id}")
        if step_id and step_id != task_id:
            parts.append(f"step: {step_id}")
        if phase:
            parts.append(f"phase: {phase}")

        full_message = message if len(parts) == 1 else f"{message} ({', '.join(parts[1:])})"
        super().__init__(full_message)
        # Preserve original message
        self.message = message

    def to_record(self) -> dict[str, Any]:
        """Serializable form stored on the task and in snapshots."""
        return {
            "kind": self.kind,
            "message": self.message,
            "task_id": self.task_id,
            "step_id": self.step_id,
            "phase": self.phase,
        }


class CLIUnavailableError(TaskError):
    """The assistant CLI is not installed or not on PATH.

    Attributes:
        suggestion: Remediation text (install command, docs link)
    """

    kind = "cli_unavailable"

    def __init__(
        self,
        message: str,
        suggestion: str | None = None,
        task_id: str | None = None,
        step_id: str | None = None,
    ) -> None:
        self.suggestion = suggestion
        super().__init__(message, task_id=task_id, step_id=step_id, phase="spawn")
        if suggestion:
            self.args = (f"{self.args[0]}\nSuggestion: {suggestion}",)

    def to_record(self) -> dict[str, Any]:
        record = super().to_record()
        record["suggestion"] = self.suggestion
        return record


class RunFailureError(TaskError):
    """The CLI process ran and exited non-zero."""

    kind = "run_failure"

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        task_id: str | None = None,
        step_id: str | None = None,
    ) -> None:
        self.exit_code = exit_code
        super().__init__(message, task_id=task_id, step_id=step_id, phase="run")

    def to_record(self) -> dict[str, Any]:
        record = super().to_record()
        record["exit_code"] = self.exit_code
        return record


class ChainResolutionError(TaskError):
    """A session reference points at a task that produced no session."""

    kind = "chain_resolution"

    def __init__(
        self,
        message: str,
        reference: str | None = None,
        task_id: str | None = None,
        step_id: str | None = None,
    ) -> None:
        self.reference = reference
        super().__init__(message, task_id=task_id, step_id=step_id, phase="chain")

    def to_record(self) -> dict[str, Any]:
        record = super().to_record()
        record["reference"] = self.reference
        return record


class TaskCancelledError(TaskError):
    """The task's process was terminated on request."""

    kind = "cancelled"

    def __init__(self, message: str = "Task cancelled", task_id: str | None = None, step_id: str | None = None) -> None:
        super().__init__(message, task_id=task_id, step_id=step_id, phase="cancel")


class RateLimitError(TaskError):
    """The CLI reported its usage limit; the pipeline pauses until reset_at."""

    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        reset_at: datetime | None = None,
        task_id: str | None = None,
        step_id: str | None = None,
    ) -> None:
        self.reset_at = reset_at
        if reset_at and "until" not in message:
            message = f"{message} until {reset_at.isoformat()}"
        super().__init__(message, task_id=task_id, step_id=step_id, phase="run")

    def to_record(self) -> dict[str, Any]:
        record = super().to_record()
        record["reset_at"] = self.reset_at.isoformat() if self.reset_at else None
        return record
