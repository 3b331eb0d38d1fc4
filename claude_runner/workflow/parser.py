"""
Workflow document parsing and validation.

Parsing is all-or-nothing: every structural problem in a document is
collected and reported in a single ``WorkflowValidationError`` so nothing
runs from a half-valid workflow. The parser also converts between workflow
documents and the ad hoc task lists accepted by the runner.

Example:
    >>> parser = WorkflowParser()
    >>> workflow = parser.load(".github/workflows/claude-review.yml")
    >>> tasks = parser.workflow_to_tasks(workflow)
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import pydantic
import structlog
import yaml

from claude_runner.enums import ConditionType
from claude_runner.exceptions import WorkflowParseError, WorkflowValidationError
from claude_runner.models.task import TaskItem
from claude_runner.models.workflow import DEFAULT_ACTION, Job, Step, StepParameters, Workflow
from claude_runner.workflow.session_reference import get_session_reference

log = structlog.get_logger(__name__)

_VARIABLE = re.compile(
    r"\$\{\{\s*(inputs|env|steps)\.([A-Za-z0-9_\-]+)(?:\.outputs\.([A-Za-z0-9_\-]+))?\s*\}\}"
)
_CONDITIONS = {condition.value for condition in ConditionType}
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_]")


def session_template(step_id: str) -> str:
    """Templated ``resume_session`` value pointing at ``step_id``."""
    return "${{ steps.%s.outputs.session_id }}" % step_id


def pipeline_file_name(name: str) -> str:
    """File name used when saving a pipeline built from a task list."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "pipeline"
    return f"claude-{slug}.yml"


class WorkflowParser:
    """Parse, validate and serialize workflow documents."""

    def parse(self, source: str, *, origin: str | None = None) -> Workflow:
        """Parse a YAML workflow document.

        Args:
            source: YAML text
            origin: Path or label used in error messages

        Returns:
            Validated, immutable Workflow

        Raises:
            WorkflowParseError: If the text is not YAML or not a mapping
            WorkflowValidationError: If the document is structurally invalid
        """
        try:
            data = yaml.safe_load(source)
        except yaml.YAMLError as e:
            raise WorkflowParseError(f"Invalid YAML syntax: {e}", source=origin) from e

        if not isinstance(data, dict):
            raise WorkflowParseError("Workflow must be a YAML mapping, not a list or scalar", source=origin)

        # YAML 1.1 reads a bare `on:` key as boolean True
        if True in data and "on" not in data:
            data["on"] = data.pop(True)

        errors: list[str] = []
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            errors.append("Workflow must have a name")

        jobs: dict[str, dict[str, Any]] = {}
        raw_jobs = data.get("jobs")
        if not isinstance(raw_jobs, dict) or not raw_jobs:
            errors.append("Workflow must have at least one job")
        else:
            for job_id, raw_job in raw_jobs.items():
                job = self._validate_job(str(job_id), raw_job, errors)
                if job is not None:
                    jobs[str(job_id)] = job

        if errors:
            log.debug("workflow_validation_failed", origin=origin, errors=errors)
            raise WorkflowValidationError(errors[0], errors)

        try:
            workflow = Workflow.model_validate(
                {
                    "name": name,
                    "on": data.get("on"),
                    "inputs": data.get("inputs") or {},
                    "env": _string_map(data.get("env")),
                    "jobs": {job_id: Job.model_validate(job) for job_id, job in jobs.items()},
                }
            )
        except pydantic.ValidationError as e:
            messages = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise WorkflowValidationError(messages[0], messages) from e

        log.debug("workflow_parsed", origin=origin, name=workflow.name, jobs=len(workflow.jobs))
        return workflow

    def _validate_job(self, job_id: str, raw_job: Any, errors: list[str]) -> dict[str, Any] | None:
        if not isinstance(raw_job, dict):
            errors.append(f"Job '{job_id}' must be a mapping")
            return None

        raw_steps = raw_job.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            errors.append(f"Job '{job_id}' must have at least one step")
            return None

        seen: list[str] = []
        sessions: set[str] = set()
        steps = []
        for index, raw_step in enumerate(raw_steps):
            step = self._validate_step(job_id, index, raw_step, seen, sessions, errors)
            if step is not None:
                steps.append(step)

        job = {key: value for key, value in raw_job.items() if key != "steps"}
        job["id"] = job_id
        job["env"] = _string_map(raw_job.get("env"))
        job["steps"] = steps
        return job

    def _validate_step(
        self,
        job_id: str,
        index: int,
        raw_step: Any,
        seen: list[str],
        sessions: set[str],
        errors: list[str],
    ) -> dict[str, Any] | None:
        where = f"Job '{job_id}' step {index + 1}"
        if not isinstance(raw_step, dict):
            errors.append(f"{where} must be a mapping")
            return None

        step_id = raw_step.get("id", f"step_{index + 1}")
        if not isinstance(step_id, str) or not step_id:
            errors.append(f"{where} has an invalid id")
            return None
        where = f"Job '{job_id}' step '{step_id}'"
        if step_id in seen:
            errors.append(f"{where}: duplicate step id")

        params = raw_step.get("with")
        if not isinstance(params, dict):
            errors.append(f"{where}: missing 'with' parameters")
            seen.append(step_id)
            return None

        prompt = params.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            errors.append(f"{where}: prompt is required")

        condition = params.get("condition")
        if condition is not None and condition not in _CONDITIONS:
            errors.append(f"{where}: condition must be one of {', '.join(sorted(_CONDITIONS))}")

        for key in ("check", "run"):
            if key in params and not isinstance(params[key], str):
                errors.append(f"{where}: {key} must be a string command")

        if "model" in params and not isinstance(params["model"], str):
            errors.append(f"{where}: model must be a string")

        resume = params.get("resume_session")
        if resume is not None:
            reference = get_session_reference(resume)
            if reference is None:
                errors.append(f"{where}: invalid session reference {resume!r}")
            elif reference not in seen:
                errors.append(f"{where}: resume_session references '{reference}', which is not an earlier step")
            elif reference not in sessions:
                errors.append(
                    f"{where}: resume_session references '{reference}', which does not set output_session: true"
                )

        if params.get("output_session") is True:
            sessions.add(step_id)
        seen.append(step_id)
        return {**raw_step, "id": step_id}

    def load(self, path: str | Path) -> Workflow:
        """Read and parse a workflow file."""
        workflow_path = Path(path)
        try:
            with open(workflow_path) as f:
                content = f.read()
        except OSError as e:
            raise WorkflowParseError(f"Cannot read workflow file: {e}", source=str(workflow_path)) from e
        return self.parse(content, origin=str(workflow_path))

    def save(self, path: str | Path, workflow: Workflow) -> Path:
        """Serialize ``workflow`` to ``path``, creating parent directories."""
        workflow_path = Path(path)
        workflow_path.parent.mkdir(parents=True, exist_ok=True)
        with open(workflow_path, "w") as f:
            f.write(self.to_yaml(workflow))
        log.info("workflow_saved", path=str(workflow_path), name=workflow.name)
        return workflow_path

    def list_workflows(self, directory: str | Path) -> list[Path]:
        """Workflow files in ``directory``, sorted by name."""
        root = Path(directory)
        if not root.is_dir():
            return []
        return sorted(p for p in root.iterdir() if p.suffix in (".yml", ".yaml") and p.is_file())

    def to_yaml(self, workflow: Workflow) -> str:
        """Serialize a workflow, preserving job and step order."""
        data = workflow.model_dump(mode="json", by_alias=True, exclude_none=True, exclude_defaults=True)
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False, allow_unicode=True)

    @staticmethod
    def resolve_variables(
        template: str,
        *,
        inputs: Mapping[str, Any] | None = None,
        env: Mapping[str, str] | None = None,
        steps: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> str:
        """Substitute ``${{ inputs.x }}``, ``${{ env.x }}`` and ``${{ steps.id.outputs.key }}``.

        Unknown references resolve to an empty string. A ``steps`` reference
        without ``.outputs.<key>`` is left untouched.
        """
        inputs = inputs or {}
        env = env or {}
        steps = steps or {}

        def replace(match: re.Match[str]) -> str:
            namespace, key, output = match.groups()
            if namespace == "inputs":
                value = inputs.get(key)
            elif namespace == "env":
                value = env.get(key)
            elif output is None:
                return match.group(0)
            else:
                value = steps.get(key, {}).get(output)
            return "" if value is None else _stringify(value)

        return _VARIABLE.sub(replace, template)

    def resolve_inputs(self, workflow: Workflow, provided: Mapping[str, Any] | None = None) -> dict[str, str]:
        """Merge declared input defaults with ``provided`` values.

        Inputs are declared either at the top level or under
        ``on.workflow_dispatch.inputs``.

        Raises:
            WorkflowValidationError: If a required input has no value
        """
        provided = dict(provided or {})
        declarations: dict[str, Any] = dict(workflow.inputs)
        if isinstance(workflow.on, dict):
            dispatch = workflow.on.get("workflow_dispatch")
            if isinstance(dispatch, dict) and isinstance(dispatch.get("inputs"), dict):
                declarations.update(dispatch["inputs"])

        values: dict[str, str] = {}
        missing = []
        for name, declaration in declarations.items():
            if isinstance(declaration, dict):
                default = declaration.get("default")
                required = bool(declaration.get("required", False))
            else:
                default, required = declaration, False
            value = provided.pop(name, default)
            if value is None:
                if required:
                    missing.append(f"Missing required input '{name}'")
                continue
            values[name] = _stringify(value)

        if missing:
            raise WorkflowValidationError(missing[0], missing)

        values.update({name: _stringify(value) for name, value in provided.items()})
        return values

    def workflow_to_tasks(self, workflow: Workflow) -> list[TaskItem]:
        """Expand every step into a pending task, in job then step order.

        Task ids equal step ids for single-job workflows and are prefixed with
        the job id otherwise.
        """
        prefixed = len(workflow.jobs) > 1
        tasks = []
        for job, step in workflow.iter_steps():
            params = step.params
            reference = get_session_reference(params.resume_session) if params.resume_session else None
            tasks.append(
                TaskItem(
                    id=f"{job.id}.{step.id}" if prefixed else step.id,
                    prompt=params.prompt,
                    name=step.name,
                    model=params.model,
                    resume_from_task_id=(f"{job.id}.{reference}" if prefixed else reference) if reference else None,
                    output_session=params.output_session,
                    allow_all_tools=params.allow_all_tools,
                    check=params.check,
                    condition=params.condition,
                    working_directory=params.working_directory,
                    step_id=step.id,
                    job_id=job.id,
                )
            )
        return tasks

    def tasks_to_workflow(
        self,
        name: str,
        tasks: Sequence[TaskItem],
        *,
        model: str = "auto",
        allow_all_tools: bool = False,
    ) -> Workflow:
        """Build a single-job workflow from an ad hoc task list."""
        self.validate_tasks(tasks)
        step_ids = {task.id: _UNSAFE_ID_CHARS.sub("_", task.id) for task in tasks}

        references: dict[int, str] = {}
        for index, task in enumerate(tasks):
            if task.resume_previous and index > 0:
                references[index] = step_ids[tasks[index - 1].id]
            elif task.resume_from_task_id:
                references[index] = step_ids[task.resume_from_task_id]
        outputs = set(references.values())

        steps = []
        for index, task in enumerate(tasks):
            step_id = step_ids[task.id]
            params: dict[str, Any] = {"prompt": task.prompt, "model": task.model or model}
            if allow_all_tools or task.allow_all_tools:
                params["allow_all_tools"] = True
            if step_id in outputs:
                params["output_session"] = True
            if index in references:
                params["resume_session"] = session_template(references[index])
            if task.check:
                params["check"] = task.check
            if task.condition is not ConditionType.ALWAYS:
                params["condition"] = task.condition
            steps.append(
                Step(
                    id=step_id,
                    name=task.name or f"Task {index + 1}",
                    uses=DEFAULT_ACTION,
                    with_=StepParameters(**params),
                )
            )

        job = Job(id="pipeline", name=name, runs_on="ubuntu-latest", steps=tuple(steps))
        return Workflow(name=name, on={"workflow_dispatch": {}}, jobs={"pipeline": job})

    @staticmethod
    def validate_tasks(tasks: Sequence[TaskItem]) -> None:
        """Reject duplicate ids, empty prompts and forward session references.

        Raises:
            WorkflowValidationError: With every problem found
        """
        errors = []
        if not tasks:
            errors.append("Task list is empty")
        seen: set[str] = set()
        for task in tasks:
            if task.id in seen:
                errors.append(f"Task '{task.id}': duplicate task id")
            if not task.prompt or not task.prompt.strip():
                errors.append(f"Task '{task.id}': prompt is required")
            if task.resume_from_task_id and task.resume_from_task_id not in seen:
                errors.append(
                    f"Task '{task.id}': resumes '{task.resume_from_task_id}', which is not an earlier task"
                )
            seen.add(task.id)
        if errors:
            raise WorkflowValidationError(errors[0], errors)


def _string_map(value: Any) -> dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): _stringify(item) for key, item in value.items()}


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
