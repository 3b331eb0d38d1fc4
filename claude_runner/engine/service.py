"""
Engine operations exposed to hosts.

``RunnerService`` is the single entry point the CLI and embedding hosts talk
to. It turns task lists and workflow documents into execution states, runs
them through ``PipelineRunner`` and keeps track of the runners that are
currently active so that pause and cancel requests reach the right one.

One coordinator exists per pipeline id: starting or resuming an id that is
already active raises ``WorkflowError``.

Example:
    >>> service = RunnerService(RunnerSettings())
    >>> outcome = await service.run_workflow(".github/workflows/claude-review.yml")
    >>> outcome.status
    <PipelineStatus.COMPLETED: 'completed'>
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog

from claude_runner.config.settings import RunnerSettings
from claude_runner.engine.commands import (
    CancelTaskCommand,
    CancelWorkflowCommand,
    DeleteWorkflowStateCommand,
    GetResumableWorkflowsCommand,
    PausePipelineCommand,
    ResumePipelineCommand,
    RunnerCommand,
    RunTasksCommand,
    RunWorkflowCommand,
)
from claude_runner.engine.conditions import ConditionEvaluator
from claude_runner.engine.events import EventSink, fan_out
from claude_runner.engine.executor import TaskExecutor
from claude_runner.engine.json_log import WorkflowJsonLogger
from claude_runner.engine.runner import PipelineRunner
from claude_runner.engine.state_store import ExecutionStateStore
from claude_runner.enums import OutputFormat, PauseReason
from claude_runner.exceptions import WorkflowError
from claude_runner.models.task import (
    PipelineExecutionState,
    PipelineOutcome,
    ResumableSummary,
    TaskItem,
    new_pipeline_id,
    utc_now,
)
from claude_runner.models.workflow import Workflow
from claude_runner.utils.cli_detector import MAX_PARALLEL_TASKS, MIN_PARALLEL_TASKS, detect_parallel_tasks_count
from claude_runner.utils.logging_config import bind_pipeline_context, clear_pipeline_context
from claude_runner.workflow.parser import WorkflowParser

log = structlog.get_logger(__name__)


class RunnerService:
    """Run, pause, resume and cancel pipelines.

    Args:
        settings: Runner settings
        executor: Task executor; built from ``settings.executor`` when omitted
        state_store: Snapshot store; rooted at ``settings.state_dir`` when omitted
        event_sink: Receives every runner event
    """

    def __init__(
        self,
        settings: RunnerSettings,
        executor: TaskExecutor | None = None,
        state_store: ExecutionStateStore | None = None,
        event_sink: EventSink | None = None,
    ) -> None:
        self.settings = settings
        self.executor = executor or TaskExecutor.from_settings(settings)
        self.state_store = state_store or ExecutionStateStore(settings.state_dir)
        self.event_sink = event_sink
        self.parser = WorkflowParser()
        self._runners: dict[str, PipelineRunner] = {}

    @property
    def active_pipelines(self) -> list[str]:
        return list(self._runners)

    async def run_tasks(
        self,
        tasks: Sequence[TaskItem],
        output_format: OutputFormat | str | None = None,
        *,
        name: str | None = None,
        model: str | None = None,
        working_directory: str | Path | None = None,
        parallel_tasks_count: int | None = None,
        pipeline_id: str | None = None,
    ) -> PipelineOutcome:
        """Run an ad hoc task list.

        Raises:
            WorkflowValidationError: If the task list is invalid; nothing runs
            WorkflowError: If ``pipeline_id`` is already active
        """
        tasks = list(tasks)
        self.parser.validate_tasks(tasks)

        state = PipelineExecutionState(
            id=pipeline_id or new_pipeline_id(),
            name=name or "Ad hoc pipeline",
            tasks=tasks,
            model=model or self.settings.executor.default_model,
            working_directory=str(working_directory or Path.cwd()),
            output_format=self._output_format(tasks, output_format),
            parallel_tasks_count=await self._parallel_tasks_count(parallel_tasks_count),
            source="tasks",
        )
        return await self._execute(state)

    async def run_workflow(
        self,
        workflow: Workflow | str | Path,
        inputs: Mapping[str, Any] | None = None,
        *,
        working_directory: str | Path | None = None,
        parallel_tasks_count: int | None = None,
    ) -> PipelineOutcome:
        """Run a workflow given as a model, a file path or YAML text.

        Raises:
            WorkflowParseError: If the document cannot be read as YAML
            WorkflowValidationError: If the document or its inputs are invalid; nothing runs
        """
        workflow_path = self._workflow_file(workflow)
        workflow = self._load_workflow(workflow)
        resolved_inputs = self.parser.resolve_inputs(workflow, inputs)
        tasks = self.parser.workflow_to_tasks(workflow)

        state = PipelineExecutionState(
            id=new_pipeline_id("workflow"),
            name=workflow.name,
            tasks=tasks,
            model=self.settings.executor.default_model,
            working_directory=str(working_directory or Path.cwd()),
            output_format=self._output_format(tasks, None),
            parallel_tasks_count=await self._parallel_tasks_count(parallel_tasks_count),
            variables={"inputs": resolved_inputs, "env": dict(workflow.env)},
            source="workflow",
            workflow_path=str(workflow_path.resolve()) if workflow_path else None,
        )
        return await self._execute(state)

    async def pause_pipeline(self, pipeline_id: str) -> str:
        """Pause an active pipeline once its running tasks finish.

        A paused snapshot is written immediately, so the pipeline is listed as
        resumable even if this process dies before the running tasks finish.

        Returns:
            The id of the paused pipeline

        Raises:
            WorkflowError: If no pipeline with this id is active, or it has already finished
            StateStoreError: If the snapshot cannot be written
        """
        runner = self._runners.get(pipeline_id)
        if runner is None:
            raise WorkflowError(f"No active pipeline with id {pipeline_id}")
        if runner.finished:
            raise WorkflowError(f"Pipeline {pipeline_id} has already finished")

        runner.request_pause(PauseReason.MANUAL)

        snapshot = runner.snapshot()
        snapshot.paused = True
        snapshot.paused_at = utc_now()
        snapshot.pause_reason = PauseReason.MANUAL
        await self.state_store.save(snapshot)
        return pipeline_id

    async def resume_pipeline(self, pipeline_id: str) -> PipelineOutcome:
        """Continue a pipeline from its stored snapshot.

        Snapshots left by a process that died mid-run resume like an
        interrupted pause.

        Raises:
            WorkflowError: If the pipeline is already active
            StateStoreError: If no snapshot exists
        """
        if pipeline_id in self._runners:
            raise WorkflowError(f"Pipeline {pipeline_id} is already running")
        state = await self.state_store.resume(pipeline_id)
        state.parallel_tasks_count = min(max(state.parallel_tasks_count, MIN_PARALLEL_TASKS), MAX_PARALLEL_TASKS)
        return await self._execute(state, resumed=True)

    async def cancel_task(self, pipeline_id: str | None = None) -> list[str]:
        """Terminate the running tasks of one pipeline, or of every active pipeline.

        Returns:
            Ids of the tasks that were signalled
        """
        cancelled: list[str] = []
        for runner in self._select(pipeline_id):
            cancelled.extend(await runner.cancel_task())
        return cancelled

    async def cancel_workflow(self, pipeline_id: str | None = None) -> list[str]:
        """Cancel one active pipeline, or all of them.

        Returns:
            Ids of the pipelines that were cancelled
        """
        runners = self._select(pipeline_id)
        await asyncio.gather(*(runner.cancel() for runner in runners))
        return [runner.pipeline_id for runner in runners if runner.pipeline_id]

    async def delete_workflow_state(self, pipeline_id: str) -> bool:
        """Remove a stored snapshot.

        Raises:
            WorkflowError: If the pipeline is currently active
        """
        if pipeline_id in self._runners:
            raise WorkflowError(f"Pipeline {pipeline_id} is running; cancel it first")
        return await self.state_store.delete(pipeline_id)

    async def get_resumable_workflows(self) -> list[ResumableSummary]:
        """Stored snapshots that can be resumed.

        A pipeline active in this service is listed only once a pause was
        requested for it; its progress snapshots are not resumable while it runs.
        """
        return [
            summary
            for summary in await self.state_store.list()
            if summary.id not in self._runners or self._runners[summary.id].pause_requested
        ]

    async def cleanup_old_states(self) -> list[str]:
        return await self.state_store.cleanup_old_states(timedelta(days=self.settings.pipeline.state_max_age_days))

    async def dispatch(self, command: RunnerCommand) -> Any:
        """Execute a command produced by ``parse_command``."""
        log.debug("command_dispatched", kind=command.kind)

        if isinstance(command, RunTasksCommand):
            return await self.run_tasks(
                [spec.to_task() for spec in command.tasks],
                command.output_format,
                name=command.name,
                model=command.model,
                working_directory=command.working_directory,
                parallel_tasks_count=command.parallel_tasks_count,
            )
        if isinstance(command, RunWorkflowCommand):
            return await self.run_workflow(
                command.workflow,
                command.inputs,
                working_directory=command.working_directory,
                parallel_tasks_count=command.parallel_tasks_count,
            )
        if isinstance(command, PausePipelineCommand):
            return await self.pause_pipeline(command.pipeline_id)
        if isinstance(command, ResumePipelineCommand):
            return await self.resume_pipeline(command.pipeline_id)
        if isinstance(command, CancelTaskCommand):
            return await self.cancel_task(command.pipeline_id)
        if isinstance(command, CancelWorkflowCommand):
            return await self.cancel_workflow(command.pipeline_id)
        if isinstance(command, DeleteWorkflowStateCommand):
            return await self.delete_workflow_state(command.pipeline_id)
        if isinstance(command, GetResumableWorkflowsCommand):
            return await self.get_resumable_workflows()
        raise WorkflowError(f"Unsupported command: {command!r}")

    async def _execute(self, state: PipelineExecutionState, *, resumed: bool = False) -> PipelineOutcome:
        if state.id in self._runners:
            raise WorkflowError(f"Pipeline {state.id} is already running")

        runner = PipelineRunner(
            self.executor,
            state_store=self.state_store,
            conditions=ConditionEvaluator(check_timeout=self.settings.pipeline.check_timeout_seconds),
            event_sink=fan_out(self.event_sink, self._json_log(state)),
            parallel_tasks_count=state.parallel_tasks_count,
            persist_progress=self.settings.pipeline.persist_progress,
            base_options=self.executor.default_options,
        )
        self._runners[state.id] = runner
        bind_pipeline_context(state.id)
        try:
            return await runner.run(state, resumed=resumed)
        finally:
            del self._runners[state.id]
            clear_pipeline_context()

    def _select(self, pipeline_id: str | None) -> list[PipelineRunner]:
        if pipeline_id is None:
            return list(self._runners.values())
        runner = self._runners.get(pipeline_id)
        if runner is None:
            log.info("pipeline_not_active", requested_id=pipeline_id)
            return []
        return [runner]

    @staticmethod
    def _workflow_file(workflow: Workflow | str | Path) -> Path | None:
        # YAML text always spans several lines; a single line is a path
        if isinstance(workflow, Path):
            return workflow
        if isinstance(workflow, str) and "\n" not in workflow:
            return Path(workflow)
        return None

    def _load_workflow(self, workflow: Workflow | str | Path) -> Workflow:
        if isinstance(workflow, Workflow):
            return workflow
        path = self._workflow_file(workflow)
        if path is not None:
            return self.parser.load(path)
        return self.parser.parse(workflow)

    def _json_log(self, state: PipelineExecutionState) -> WorkflowJsonLogger | None:
        if not state.workflow_path or not self.settings.pipeline.workflow_json_log:
            return None
        return WorkflowJsonLogger(state.workflow_path)

    def _output_format(self, tasks: Sequence[TaskItem], requested: OutputFormat | str | None) -> OutputFormat:
        output_format = OutputFormat(requested or self.settings.executor.output_format)
        chained = any(task.resume_from_task_id or task.resume_previous for task in tasks)
        if chained and not output_format.captures_session:
            log.warning("output_format_upgraded", requested=str(output_format), used=str(OutputFormat.JSON))
            return OutputFormat.JSON
        return output_format

    async def _parallel_tasks_count(self, override: int | None) -> int:
        if override is not None:
            return override
        if self.settings.pipeline.parallel_tasks_count is not None:
            return self.settings.pipeline.parallel_tasks_count
        return await detect_parallel_tasks_count(self.settings.executor.binary)
