"""CLI entry point for claude-runner."""

import asyncio
import json
import sys
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import click
import structlog
import yaml
from click.core import ParameterSource

from claude_runner.config.settings import RunnerSettings
from claude_runner.engine.commands import RunTasksCommand, parse_command
from claude_runner.engine.events import (
    PipelineFinished,
    PipelinePaused,
    PipelineStarted,
    RunnerEvent,
    TaskStatusChanged,
)
from claude_runner.engine.service import RunnerService
from claude_runner.enums import PipelineStatus, TaskStatus
from claude_runner.exceptions import ClaudeRunnerError, ConfigurationError, WorkflowValidationError
from claude_runner.models.task import PipelineOutcome
from claude_runner.utils.logging_config import configure_logging
from claude_runner.workflow.parser import WorkflowParser

log = structlog.get_logger(__name__)

DEFAULT_CONFIG = ".claude-runner/config.yaml"


@click.group()
@click.option("--config", default=DEFAULT_CONFIG, show_default=True, help="Path to configuration file")
@click.option("--log-level", default=None, help="Logging level (overrides the configuration)")
@click.option("--console-logs", is_flag=True, help="Human-readable logs instead of JSON")
@click.pass_context
def cli(ctx: click.Context, config: str, log_level: str | None, console_logs: bool) -> None:
    """claude-runner: run Claude CLI workflows with session chaining and pause/resume."""
    config_path = Path(config)
    explicit = ctx.get_parameter_source("config") is not ParameterSource.DEFAULT

    try:
        if config_path.exists():
            settings = RunnerSettings.from_yaml(config_path)
        elif explicit:
            raise ConfigurationError(f"Configuration file not found: {config}")
        else:
            settings = RunnerSettings()
    except ConfigurationError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    configure_logging(log_level or settings.log_level, json_output=not console_logs)
    ctx.obj = {"settings": settings}


def _parse_inputs(ctx: click.Context, param: click.Parameter, values: tuple[str, ...]) -> dict[str, str]:
    inputs = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected key=value, got {item!r}")
        inputs[key.strip()] = value
    return inputs


@cli.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--input", "inputs", multiple=True, callback=_parse_inputs, help="Workflow input as key=value")
@click.option("--parallel", type=click.IntRange(1, 8), default=None, help="Maximum concurrently running tasks")
@click.option(
    "--working-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory the CLI runs in (default: current directory)",
)
@click.pass_context
def run(
    ctx: click.Context,
    workflow_file: Path,
    inputs: dict[str, str],
    parallel: int | None,
    working_dir: Path | None,
) -> None:
    """Run a workflow file."""
    service = _service(ctx)
    outcome = _invoke(
        "run",
        service.run_workflow(workflow_file, inputs, working_directory=working_dir, parallel_tasks_count=parallel),
    )
    _exit_with(outcome)


@cli.command("run-tasks")
@click.argument("tasks_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--output-format",
    type=click.Choice(["text", "json", "stream-json"]),
    default=None,
    help="CLI output format (default: from configuration)",
)
@click.option("--parallel", type=click.IntRange(1, 8), default=None, help="Maximum concurrently running tasks")
@click.option(
    "--working-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory the CLI runs in (default: current directory)",
)
@click.pass_context
def run_tasks(
    ctx: click.Context,
    tasks_file: Path,
    output_format: str | None,
    parallel: int | None,
    working_dir: Path | None,
) -> None:
    """Run an ad hoc task list from a YAML or JSON file.

    The file holds either a list of tasks or a mapping with ``tasks`` and
    optional ``name`` and ``model`` keys.
    """
    command = _load_tasks_file(tasks_file)
    service = _service(ctx)
    outcome = _invoke(
        "run_tasks",
        service.run_tasks(
            [spec.to_task() for spec in command.tasks],
            output_format or command.output_format,
            name=command.name or tasks_file.stem,
            model=command.model,
            working_directory=working_dir or command.working_directory,
            parallel_tasks_count=parallel or command.parallel_tasks_count,
        ),
    )
    _exit_with(outcome)


@cli.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(workflow_file: Path) -> None:
    """Validate a workflow file without running it."""
    try:
        workflow = WorkflowParser().load(workflow_file)
    except WorkflowValidationError as e:
        click.echo(f"Invalid workflow: {workflow_file}", err=True)
        for error in e.errors:
            click.echo(f"  - {error}", err=True)
        sys.exit(1)
    except ClaudeRunnerError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    steps = workflow.iter_steps()
    click.echo(f"Workflow '{workflow.name}' is valid: {len(workflow.jobs)} job(s), {len(steps)} step(s)")
    for job, step in steps:
        click.echo(f"  {job.id}.{step.id}: {step.name or step.params.prompt[:60]}")


@cli.command("list-resumable")
@click.option("--json", "as_json", is_flag=True, help="Print JSON instead of a table")
@click.pass_context
def list_resumable(ctx: click.Context, as_json: bool) -> None:
    """List paused or interrupted pipelines that can be resumed."""
    service = _service(ctx)
    summaries = _invoke("list_resumable", service.get_resumable_workflows())

    if as_json:
        click.echo(json.dumps([summary.to_dict() for summary in summaries], indent=2))
        return
    if not summaries:
        click.echo("No resumable pipelines")
        return
    for summary in summaries:
        progress = f"{summary.current_index}/{summary.total_tasks}"
        click.echo(f"{summary.id}  {summary.name}  paused {summary.paused_at} ({summary.pause_reason})  {progress}")


@cli.command()
@click.argument("pipeline_id")
@click.pass_context
def resume(ctx: click.Context, pipeline_id: str) -> None:
    """Resume a paused pipeline."""
    service = _service(ctx)
    outcome = _invoke("resume", service.resume_pipeline(pipeline_id))
    _exit_with(outcome)


@cli.command("delete-state")
@click.argument("pipeline_id")
@click.pass_context
def delete_state(ctx: click.Context, pipeline_id: str) -> None:
    """Delete the stored snapshot of a pipeline."""
    service = _service(ctx)
    if _invoke("delete_state", service.delete_workflow_state(pipeline_id)):
        click.echo(f"Deleted state of {pipeline_id}")
    else:
        click.echo(f"No stored state for {pipeline_id}")


@cli.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Delete snapshots older than pipeline.state_max_age_days."""
    service = _service(ctx)
    removed = _invoke("cleanup", service.cleanup_old_states())
    click.echo(f"Removed {len(removed)} stale snapshot(s)")


def _service(ctx: click.Context) -> RunnerService:
    try:
        return RunnerService(ctx.obj["settings"], event_sink=_echo_event)
    except ClaudeRunnerError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)


def _invoke(name: str, coro: Coroutine[Any, Any, Any]) -> Any:
    try:
        return asyncio.run(coro)
    except WorkflowValidationError as e:
        click.echo(f"Error: {e.message}", err=True)
        for error in e.errors[1:]:
            click.echo(f"  - {error}", err=True)
        sys.exit(1)
    except ClaudeRunnerError as e:
        click.echo(f"Error: {e.message}", err=True)
        log.debug(f"{name}_error", exc_info=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        sys.exit(130)
    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        log.error(f"{name}_unexpected", exc_info=True)
        sys.exit(1)


def _load_tasks_file(path: Path) -> RunTasksCommand:
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        click.echo(f"Error: Cannot read tasks file: {e}", err=True)
        sys.exit(1)

    payload = {"tasks": data} if isinstance(data, list) else data
    if not isinstance(payload, dict):
        click.echo("Error: Tasks file must contain a list of tasks or a mapping with 'tasks'", err=True)
        sys.exit(1)

    try:
        command = parse_command({**payload, "kind": "runTasks"})
    except ClaudeRunnerError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)
    assert isinstance(command, RunTasksCommand)
    return command


def _echo_event(event: RunnerEvent) -> None:
    if isinstance(event, PipelineStarted):
        verb = "Resuming" if event.resumed else "Starting"
        click.echo(f"{verb} pipeline '{event.name}' [{event.pipeline_id}] ({event.total_tasks} tasks)")
    elif isinstance(event, TaskStatusChanged):
        line = f"  [{event.index + 1}] {event.task_id}: {event.status}"
        if event.status is TaskStatus.PENDING and event.attempt > 1:
            line += f" (attempt {event.attempt} queued)"
        if event.skip_reason:
            line += f" ({event.skip_reason})"
        if event.error:
            line += f" - {event.error.get('message')}"
        click.echo(line)
    elif isinstance(event, PipelinePaused):
        until = f" until {event.paused_until}" if event.paused_until else ""
        click.echo(f"Pipeline paused ({event.reason}){until}; resume with: claude-runner resume {event.pipeline_id}")
    elif isinstance(event, PipelineFinished):
        suffix = f": {event.error}" if event.error else ""
        click.echo(f"Pipeline {event.status}{suffix}")


def _exit_with(outcome: PipelineOutcome) -> None:
    for task in outcome.tasks:
        if task.status is TaskStatus.COMPLETED and task.results:
            click.echo(f"\n--- {task.display_name} ---\n{task.results}")
    if outcome.status in (PipelineStatus.FAILED, PipelineStatus.CANCELLED):
        sys.exit(1)


if __name__ == "__main__":
    cli()
