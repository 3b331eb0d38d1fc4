"""
Pipeline execution with condition gating, session chaining and pause/resume.

The runner owns the status of every task in a ``PipelineExecutionState``.
It schedules tasks the way a dependency-aware parallel executor does:

1. A task is *ready* once every task it depends on is terminal
2. Ready tasks start in list order, up to ``parallel_tasks_count`` at a time
3. The coordinator waits for the first running task to finish, writes a
   snapshot, and schedules again

Dependencies:
    - ``resume_from_task_id`` depends on the referenced task
    - ``resume_previous`` and any condition other than ``always`` depend on
      every earlier task, which serializes them behind the tasks they read

Error Handling:
    Task failures are recorded on the task (``TaskItem.error``) and never
    raised; independent tasks keep running. A failed session reference marks
    only the dependent task as ``error``. Snapshot write failures during the
    run are logged and do not stop it.

Example:
    >>> runner = PipelineRunner(TaskExecutor(), state_store=store, parallel_tasks_count=2)
    >>> outcome = await runner.run(state)
    >>> outcome.status
    <PipelineStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
import dataclasses
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from claude_runner.engine.conditions import ConditionEvaluator
from claude_runner.engine.events import (
    EventSink,
    PipelineFinished,
    PipelinePaused,
    PipelineStarted,
    RunnerEvent,
    TaskOutput,
    TaskStatusChanged,
    emit_event,
)
from claude_runner.enums import ConditionType, PauseReason, PipelineStatus, TaskOutcome, TaskStatus
from claude_runner.exceptions import (
    ChainResolutionError,
    CLIUnavailableError,
    RateLimitError,
    RunFailureError,
    StateStoreError,
    TaskCancelledError,
    TaskError,
)
from claude_runner.models.task import PipelineExecutionState, PipelineOutcome, TaskOptions, TaskResult, utc_now
from claude_runner.utils.cli_detector import MAX_PARALLEL_TASKS, MIN_PARALLEL_TASKS
from claude_runner.workflow.parser import WorkflowParser

if TYPE_CHECKING:
    from claude_runner.engine.executor import TaskExecutor
    from claude_runner.engine.state_store import ExecutionStateStore

log = structlog.get_logger(__name__)

NOT_RUN_REASON = "not run: pipeline cancelled"


class PipelineRunner:
    """Run the tasks of one pipeline to completion, pause or cancellation.

    A runner instance drives a single ``run()`` at a time. Control methods
    (``request_pause``, ``cancel_task``, ``cancel``) are safe to call from
    other coroutines while the run is in progress.

    Args:
        executor: Executes individual prompts
        state_store: Receives snapshots; None disables persistence
        conditions: Condition evaluator; a default one is created when omitted
        event_sink: Receives typed events for every status change and output chunk
        parallel_tasks_count: Maximum concurrently running tasks (1..8)
        persist_progress: Write a snapshot after every finished task
        base_options: CLI options every task starts from
    """

    def __init__(
        self,
        executor: TaskExecutor,
        *,
        state_store: ExecutionStateStore | None = None,
        conditions: ConditionEvaluator | None = None,
        event_sink: EventSink | None = None,
        parallel_tasks_count: int = 1,
        persist_progress: bool = True,
        base_options: TaskOptions | None = None,
    ) -> None:
        if not MIN_PARALLEL_TASKS <= parallel_tasks_count <= MAX_PARALLEL_TASKS:
            raise ValueError(
                f"parallel_tasks_count must be between {MIN_PARALLEL_TASKS} and {MAX_PARALLEL_TASKS}, "
                f"got {parallel_tasks_count}"
            )
        self.executor = executor
        self.state_store = state_store
        self.conditions = conditions or ConditionEvaluator()
        self.event_sink = event_sink
        self.parallel_tasks_count = parallel_tasks_count
        self.persist_progress = persist_progress
        self.base_options = base_options or TaskOptions()

        self._state: PipelineExecutionState | None = None
        self._running: dict[int, asyncio.Task[None]] = {}
        self._status_lock = asyncio.Lock()
        self._pause_reason: PauseReason | None = None
        self._paused_until: str | None = None
        self._cancel_requested = False
        self._cancelled_tasks: set[int] = set()
        self._rate_limited: set[int] = set()
        self._resume_sessions: dict[int, str] = {}
        self._finished = False
        self._snapshot_error: str | None = None

    @property
    def state(self) -> PipelineExecutionState:
        if self._state is None:
            raise RuntimeError("Pipeline has not been started")
        return self._state

    @property
    def pipeline_id(self) -> str | None:
        return self._state.id if self._state else None

    @property
    def pause_requested(self) -> bool:
        return self._pause_reason is not None

    @property
    def finished(self) -> bool:
        """True once the run stopped scheduling and is reporting its outcome."""
        return self._finished

    @property
    def _stopping(self) -> bool:
        return self._cancel_requested or self._pause_reason is not None

    def request_pause(self, reason: PauseReason = PauseReason.MANUAL, paused_until: str | None = None) -> None:
        """Let running tasks finish and start nothing further.

        Tasks still evaluating their condition stay pending and are evaluated
        again on resume. Has no effect once the run has finished.
        """
        if self._pause_reason is None and not self._finished:
            self._pause_reason = reason
            self._paused_until = paused_until
            log.info("pipeline_pause_requested", pipeline_id=self.pipeline_id, reason=str(reason))

    async def cancel_task(self, task_id: str | None = None) -> list[str]:
        """Terminate one running task, or all running tasks of this pipeline.

        A task still evaluating its condition is cancelled before it starts.

        Returns:
            Ids of the tasks that were signalled
        """
        if self._state is None:
            return []
        indices = list(self._running)
        if task_id is not None:
            indices = [i for i in indices if self._state.tasks[i].id == task_id]
        cancelled = []
        for index in indices:
            task = self._state.tasks[index]
            self._cancelled_tasks.add(index)
            if task.status is TaskStatus.PENDING or await self.executor.cancel(self._process_key(task.id)):
                cancelled.append(task.id)
        return cancelled

    async def cancel(self) -> None:
        """Cancel running tasks and mark every task not yet started as not run."""
        self._cancel_requested = True
        log.info("pipeline_cancel_requested", pipeline_id=self.pipeline_id)
        await self.cancel_task()

    def snapshot(self) -> PipelineExecutionState:
        """Independent copy of the current state, safe to persist or inspect."""
        return PipelineExecutionState.from_dict(self.state.to_dict())

    async def run(self, state: PipelineExecutionState, *, resumed: bool = False) -> PipelineOutcome:
        """Execute ``state`` until every task is terminal, or a pause or cancel stops it."""
        self._state = state
        for index, task in enumerate(state.tasks):
            if task.status is TaskStatus.RUNNING:
                state.tasks[index] = task.new_attempt()

        dependencies = {index: self._dependencies(index) for index in range(len(state.tasks))}
        pending = [index for index, task in enumerate(state.tasks) if not task.is_terminal]
        state.paused = False
        state.current_index = state.first_pending_index()

        log.info(
            "pipeline_started",
            pipeline_id=state.id,
            name=state.name,
            total_tasks=len(state.tasks),
            pending_tasks=len(pending),
            parallel_tasks_count=self.parallel_tasks_count,
            resumed=resumed,
        )
        await self._emit(
            PipelineStarted(pipeline_id=state.id, name=state.name, total_tasks=len(state.tasks), resumed=resumed)
        )

        try:
            while True:
                if not self._stopping:
                    available_slots = self.parallel_tasks_count - len(self._running)
                    for index in self._ready(pending, dependencies)[: max(available_slots, 0)]:
                        pending.remove(index)
                        self._running[index] = asyncio.create_task(
                            self._run_task(index), name=f"{state.id}:{state.tasks[index].id}"
                        )

                if not self._running:
                    break

                done, _ = await asyncio.wait(self._running.values(), return_when=asyncio.FIRST_COMPLETED)
                for index in [i for i, t in self._running.items() if t in done]:
                    finished = self._running.pop(index)
                    error = finished.exception()
                    if error is not None:
                        await self._record_internal_error(index, error)
                    elif state.tasks[index].status is TaskStatus.PENDING:
                        # deferred by a pause while its condition was evaluated
                        pending.append(index)

                await self._checkpoint()
        except asyncio.CancelledError:
            await self._interrupt()
            raise

        return await self._finish(pending)

    def _dependencies(self, index: int) -> set[int]:
        task = self.state.tasks[index]
        depends_on: set[int] = set()
        if task.resume_from_task_id:
            found = self.state.find_task(task.resume_from_task_id)
            if found is not None and found[0] < index:
                depends_on.add(found[0])
        if task.resume_previous or task.condition is not ConditionType.ALWAYS:
            depends_on.update(range(index))
        return depends_on

    def _ready(self, pending: list[int], dependencies: dict[int, set[int]]) -> list[int]:
        tasks = self.state.tasks
        return [index for index in sorted(pending) if all(tasks[d].is_terminal for d in dependencies[index])]

    async def _run_task(self, index: int) -> None:
        state = self.state
        task = state.tasks[index]
        working_directory = self._working_directory(task.working_directory)

        decision = await self.conditions.evaluate(task, self._previous_status(index), working_directory)
        if index in self._cancelled_tasks and not self._cancel_requested:
            await self._cancel_before_start(index)
            return
        if self._pause_reason is not None and not self._cancel_requested:
            log.info("task_deferred", pipeline_id=state.id, task_id=task.id, reason=str(self._pause_reason))
            return
        if not decision.should_run:
            log.info("task_skipped", pipeline_id=state.id, task_id=task.id, reason=decision.reason)
            await self._transition(index, TaskStatus.SKIPPED, skip_reason=decision.reason)
            return

        if self._cancel_requested:
            await self._transition(index, TaskStatus.CANCELLED, skip_reason=NOT_RUN_REASON)
            return

        options = dataclasses.replace(
            self.base_options,
            output_format=state.output_format,
            resume_session=None,
            allow_all_tools=self.base_options.allow_all_tools or bool(task.allow_all_tools),
        )
        if task.resume_from_task_id or task.resume_previous:
            session_id, problem = self._resolve_session(index)
            if session_id is None:
                error = ChainResolutionError(
                    problem,
                    reference=task.resume_from_task_id or "previous",
                    task_id=task.id,
                    step_id=task.step_id,
                )
                log.warning("task_chain_unresolved", pipeline_id=state.id, task_id=task.id, error=problem)
                await self._transition(index, TaskStatus.ERROR, error=error.to_record())
                return
            options.resume_session = session_id
            self._resume_sessions[index] = session_id

        prompt = self._render_prompt(task.prompt)
        await self._transition(index, TaskStatus.RUNNING)
        if self._cancel_requested:
            await self._transition(index, TaskStatus.CANCELLED, skip_reason=NOT_RUN_REASON)
            return
        if index in self._cancelled_tasks:
            await self._cancel_before_start(index)
            return
        result = await self.executor.execute_task(
            prompt,
            task.model or state.model,
            working_directory,
            options,
            task_id=self._process_key(task.id),
            on_output=partial(self._forward_output, task.id),
        )
        await self._apply_result(index, result)

    async def _cancel_before_start(self, index: int) -> None:
        task = self.state.tasks[index]
        log.info("task_cancelled_before_start", pipeline_id=self.state.id, task_id=task.id)
        error = TaskCancelledError(task_id=task.id, step_id=task.step_id)
        await self._transition(index, TaskStatus.CANCELLED, error=error.to_record())

    async def _apply_result(self, index: int, result: TaskResult) -> None:
        task = self.state.tasks[index]
        timing = {"execution_time_ms": result.execution_time_ms}

        if result.outcome is TaskOutcome.SUCCEEDED:
            await self._transition(
                index, TaskStatus.COMPLETED, results=result.output, session_id=result.session_id, **timing
            )
            return

        if result.outcome is TaskOutcome.CANCELLED:
            error: TaskError = TaskCancelledError(task_id=task.id, step_id=task.step_id)
            await self._transition(
                index, TaskStatus.CANCELLED, error=error.to_record(), results=result.output or None, **timing
            )
            return

        if result.outcome is TaskOutcome.CLI_UNAVAILABLE:
            message, _, suggestion = (result.error or "Claude CLI is not available").partition("\n")
            error = CLIUnavailableError(message, suggestion=suggestion or None, task_id=task.id, step_id=task.step_id)
        elif result.outcome is TaskOutcome.RATE_LIMITED:
            error = RateLimitError(
                result.error or "Claude usage limit reached",
                reset_at=result.rate_limit_reset,
                task_id=task.id,
                step_id=task.step_id,
            )
            self._rate_limited.add(index)
            reset = result.rate_limit_reset.isoformat() if result.rate_limit_reset else None
            self.request_pause(PauseReason.RATE_LIMIT, paused_until=reset)
        else:
            error = RunFailureError(
                result.error or "Task failed", exit_code=result.exit_code, task_id=task.id, step_id=task.step_id
            )

        log.warning("task_failed", pipeline_id=self.state.id, task_id=task.id, kind=error.kind, error=error.message)
        await self._transition(
            index, TaskStatus.ERROR, error=error.to_record(), results=result.output or None, **timing
        )

    def _previous_status(self, index: int) -> TaskStatus | None:
        for task in reversed(self.state.tasks[:index]):
            if task.status is not TaskStatus.SKIPPED:
                return task.status
        return None

    def _resolve_session(self, index: int) -> tuple[str | None, str]:
        tasks = self.state.tasks
        task = tasks[index]

        if task.resume_from_task_id:
            reference = task.resume_from_task_id
            found = self.state.find_task(reference)
            if found is None or found[0] >= index:
                return None, f"Session reference '{reference}' does not name an earlier task"
            source = found[1]
            if not source.output_session:
                return None, f"Task '{reference}' does not output its session"
            if source.status is not TaskStatus.COMPLETED:
                return None, f"Task '{reference}' did not complete (status: {source.status})"
            if not source.session_id:
                return None, f"Task '{reference}' produced no session id"
            return source.session_id, ""

        for source in reversed(tasks[:index]):
            if source.status is TaskStatus.COMPLETED:
                if source.session_id:
                    return source.session_id, ""
                return None, f"Previous task '{source.id}' produced no session id"
        return None, "No earlier completed task to resume"

    def _render_prompt(self, prompt: str) -> str:
        if "${{" not in prompt:
            return prompt
        outputs: dict[str, dict[str, Any]] = {}
        for task in self.state.tasks:
            if task.status is TaskStatus.COMPLETED:
                values = {"session_id": task.session_id, "result": task.results}
                outputs[task.id] = values
                if task.step_id:
                    outputs.setdefault(task.step_id, values)
        variables = self.state.variables
        return WorkflowParser.resolve_variables(
            prompt,
            inputs=variables.get("inputs"),
            env=variables.get("env"),
            steps=outputs,
        )

    def _working_directory(self, override: str | None) -> Path:
        base = Path(self.state.working_directory)
        if not override:
            return base
        path = Path(override)
        return path if path.is_absolute() else base / path

    def _process_key(self, task_id: str) -> str:
        return f"{self.state.id}:{task_id}"

    async def _transition(self, index: int, status: TaskStatus, **changes: Any) -> None:
        state = self.state
        async with self._status_lock:
            task = state.tasks[index]
            task.transition(status)
            for name, value in changes.items():
                setattr(task, name, value)
            state.current_index = state.first_pending_index()
            state.updated_at = utc_now()

            log.info(
                "task_status_changed",
                pipeline_id=state.id,
                task_id=task.id,
                status=str(status),
                attempt=task.attempt,
            )
            await self._emit(
                TaskStatusChanged(
                    pipeline_id=state.id,
                    task_id=task.id,
                    step_id=task.step_id,
                    name=task.name,
                    index=index,
                    status=status,
                    attempt=task.attempt,
                    skip_reason=task.skip_reason,
                    session_id=task.session_id,
                    error=task.error,
                    output_session=task.output_session,
                    resume_session=self._resume_sessions.get(index),
                    results=task.results,
                    started_at=task.started_at,
                    finished_at=task.finished_at,
                )
            )

    async def _forward_output(self, task_id: str, stream: str, text: str) -> None:
        await self._emit(TaskOutput(pipeline_id=self.state.id, task_id=task_id, stream=stream, text=text))

    async def _record_internal_error(self, index: int, error: BaseException) -> None:
        task = self.state.tasks[index]
        log.error(
            "task_internal_error",
            pipeline_id=self.state.id,
            task_id=task.id,
            error=str(error),
            exc_info=error,
        )
        if task.is_terminal:
            return
        record = TaskError(f"Internal error: {error}", task_id=task.id, step_id=task.step_id, phase="run").to_record()
        await self._transition(index, TaskStatus.ERROR, error=record)

    async def _checkpoint(self) -> None:
        if self.state_store is None or not self.persist_progress or self._cancel_requested:
            return
        state = self.state
        if self._pause_reason is not None:
            # keep an already requested pause visible to listings
            state = self.snapshot()
            state.paused = True
            state.paused_at = utc_now()
            state.pause_reason = self._pause_reason
            state.paused_until = self._paused_until
        try:
            await self.state_store.save(state)
        except StateStoreError as e:
            log.error("snapshot_save_failed", pipeline_id=self.state.id, error=e.message)

    async def _finish(self, pending: list[int]) -> PipelineOutcome:
        self._finished = True
        state = self.state

        if self._cancel_requested:
            for index in sorted(pending):
                await self._transition(index, TaskStatus.CANCELLED, skip_reason=NOT_RUN_REASON)
            await self._discard_snapshot()
            status = PipelineStatus.CANCELLED
        elif self._pause_reason is not None and (pending or self._rate_limited):
            for index in sorted(self._rate_limited):
                state.tasks[index] = state.tasks[index].new_attempt()
                await self._emit(
                    TaskStatusChanged(
                        pipeline_id=state.id,
                        task_id=state.tasks[index].id,
                        step_id=state.tasks[index].step_id,
                        index=index,
                        status=TaskStatus.PENDING,
                        attempt=state.tasks[index].attempt,
                    )
                )
            await self._persist_pause(self._pause_reason)
            await self._emit(
                PipelinePaused(
                    pipeline_id=state.id,
                    reason=self._pause_reason,
                    current_index=state.current_index,
                    paused_until=state.paused_until,
                )
            )
            status = PipelineStatus.PAUSED
        else:
            failed = any(task.status is TaskStatus.ERROR for task in state.tasks)
            status = PipelineStatus.FAILED if failed else PipelineStatus.COMPLETED
            await self._discard_snapshot()

        log.info(
            "pipeline_finished",
            pipeline_id=state.id,
            status=str(status),
            completed=sum(1 for t in state.tasks if t.status is TaskStatus.COMPLETED),
            failed=sum(1 for t in state.tasks if t.status is TaskStatus.ERROR),
            skipped=sum(1 for t in state.tasks if t.status is TaskStatus.SKIPPED),
        )
        await self._emit(PipelineFinished(pipeline_id=state.id, status=status, error=self._snapshot_error))
        return PipelineOutcome(pipeline_id=state.id, status=status, tasks=state.tasks, error=self._snapshot_error)

    async def _persist_pause(self, reason: PauseReason) -> None:
        state = self.state
        state.paused = True
        state.paused_at = utc_now()
        state.pause_reason = reason
        state.paused_until = self._paused_until
        state.current_index = state.first_pending_index()
        if self.state_store is None:
            return
        try:
            await self.state_store.save(state)
            log.info("pipeline_paused", pipeline_id=state.id, reason=str(reason), current_index=state.current_index)
        except StateStoreError as e:
            self._snapshot_error = e.message
            log.error("pause_snapshot_failed", pipeline_id=state.id, error=e.message)

    async def _discard_snapshot(self) -> None:
        if self.state_store is None:
            return
        try:
            await self.state_store.delete(self.state.id)
        except StateStoreError as e:
            log.error("snapshot_delete_failed", pipeline_id=self.state.id, error=e.message)

    async def _interrupt(self) -> None:
        """Stop child processes and leave a resumable snapshot behind."""
        log.warning("pipeline_interrupted", pipeline_id=self.state.id, running=len(self._running))
        self._pause_reason = PauseReason.INTERRUPTED
        for worker in self._running.values():
            worker.cancel()
        await asyncio.gather(*self._running.values(), return_exceptions=True)
        self._running.clear()
        await self._persist_pause(PauseReason.INTERRUPTED)

    async def _emit(self, event: RunnerEvent) -> None:
        await emit_event(self.event_sink, event)
