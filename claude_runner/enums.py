"""Enumerations shared by the workflow models, runner and state store."""

from enum import Enum


class TaskStatus(str, Enum):
    """Lifecycle of a single task attempt.

    Transitions are monotonic: ``pending`` moves to ``running``, ``skipped``,
    ``error`` or ``cancelled``; ``running`` moves to ``completed``, ``error``
    or ``cancelled``. The last four are terminal.
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.SKIPPED, TaskStatus.CANCELLED)


class ConditionType(str, Enum):
    """Gate evaluated before a task starts."""

    ALWAYS = "always"
    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"

    def __str__(self) -> str:
        return self.value


class OutputFormat(str, Enum):
    """Output formats understood by ``claude --output-format``.

    Session ids can only be captured from ``json`` and ``stream-json``.
    """

    TEXT = "text"
    JSON = "json"
    STREAM_JSON = "stream-json"

    def __str__(self) -> str:
        return self.value

    @property
    def captures_session(self) -> bool:
        return self is not OutputFormat.TEXT


class TaskOutcome(str, Enum):
    """How a single CLI invocation ended."""

    SUCCEEDED = "succeeded"
    RUN_FAILURE = "run_failure"
    CLI_UNAVAILABLE = "cli_unavailable"
    CANCELLED = "cancelled"
    RATE_LIMITED = "rate_limited"

    def __str__(self) -> str:
        return self.value


class PipelineStatus(str, Enum):
    """Final status reported when a pipeline run returns."""

    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class PauseReason(str, Enum):
    """Why a persisted snapshot is paused."""

    MANUAL = "manual"
    RATE_LIMIT = "rate_limit"
    INTERRUPTED = "interrupted"

    def __str__(self) -> str:
        return self.value
