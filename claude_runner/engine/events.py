"""Typed events emitted by the pipeline runner.

Every event carries a ``kind`` discriminator so a host can route them
without isinstance checks, and ``RunnerEventAdapter`` validates events that
crossed a process boundary as JSON.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import Annotated, Any, Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from claude_runner.enums import PauseReason, PipelineStatus, TaskStatus
from claude_runner.models.task import utc_now

log = structlog.get_logger(__name__)


class PipelineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    timestamp: str = Field(default_factory=utc_now)


class PipelineStarted(PipelineEvent):
    kind: Literal["pipelineStarted"] = "pipelineStarted"
    name: str
    total_tasks: int
    resumed: bool = False


class TaskStatusChanged(PipelineEvent):
    kind: Literal["taskStatusChanged"] = "taskStatusChanged"
    task_id: str
    step_id: str | None = None
    name: str | None = None
    index: int
    status: TaskStatus
    attempt: int = 1
    skip_reason: str | None = None
    session_id: str | None = None
    error: dict[str, Any] | None = None
    output_session: bool = False
    resume_session: str | None = None
    results: str | None = None
    started_at: str | None = None
    finished_at: str | None = None


class TaskOutput(PipelineEvent):
    kind: Literal["taskOutput"] = "taskOutput"
    task_id: str
    stream: Literal["stdout", "stderr"]
    text: str


class PipelinePaused(PipelineEvent):
    kind: Literal["pipelinePaused"] = "pipelinePaused"
    reason: PauseReason
    current_index: int
    paused_until: str | None = None


class PipelineFinished(PipelineEvent):
    kind: Literal["pipelineFinished"] = "pipelineFinished"
    status: PipelineStatus
    error: str | None = None


RunnerEvent = Annotated[
    PipelineStarted | TaskStatusChanged | TaskOutput | PipelinePaused | PipelineFinished,
    Field(discriminator="kind"),
]
RunnerEventAdapter: TypeAdapter[RunnerEvent] = TypeAdapter(RunnerEvent)

EventSink = Callable[[RunnerEvent], Awaitable[None] | None]


def fan_out(*sinks: EventSink | None) -> EventSink | None:
    """One sink delivering every event to each of ``sinks`` in order; None entries are dropped."""
    targets = [sink for sink in sinks if sink is not None]
    if len(targets) <= 1:
        return targets[0] if targets else None

    async def deliver(event: RunnerEvent) -> None:
        for sink in targets:
            await emit_event(sink, event)

    return deliver


async def emit_event(sink: EventSink | None, event: RunnerEvent) -> None:
    """Deliver ``event`` to a sync or async sink; sink failures are logged, never raised."""
    if sink is None:
        return
    try:
        result = sink(event)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log.warning("event_sink_failed", kind=event.kind, pipeline_id=event.pipeline_id, error=str(e))
