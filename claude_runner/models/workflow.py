"""
Workflow document models.

A workflow is parsed once and never mutated, so every model here is frozen.
The document layout mirrors a CI workflow file::

    name: Review pipeline
    on: workflow_dispatch
    jobs:
      pipeline:
        runs-on: ubuntu-latest
        steps:
          - id: analyse
            uses: anthropics/claude-pipeline-action@v1
            with:
              prompt: Analyse the codebase
              output_session: true

Trigger metadata (``on``) and ``runs-on`` are carried through untouched.
Unknown keys inside ``with`` are preserved so a document survives a
parse/serialize cycle.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from claude_runner.enums import ConditionType

DEFAULT_ACTION = "anthropics/claude-pipeline-action@v1"


class StepParameters(BaseModel):
    """The ``with`` block of a step."""

    model_config = ConfigDict(frozen=True, extra="allow")

    prompt: str = Field(..., description="Prompt passed to the CLI")
    model: str = Field(default="auto", description="Model name, or 'auto' to let the CLI choose")
    allow_all_tools: bool = Field(default=False, description="Skip tool permission prompts")
    output_session: bool = Field(default=False, description="Expose this step's session id to later steps")
    resume_session: str | None = Field(default=None, description="Session reference of an earlier step")
    check: str | None = Field(default=None, description="Shell command gating the step condition")
    condition: ConditionType = Field(default=ConditionType.ALWAYS, description="When the step runs")
    working_directory: str | None = Field(default=None, description="Overrides the pipeline working directory")

    @model_validator(mode="before")
    @classmethod
    def accept_run_alias(cls, data: Any) -> Any:
        """Treat ``run`` as a synonym of ``check``."""
        if isinstance(data, dict) and "run" in data:
            data = dict(data)
            run = data.pop("run")
            data.setdefault("check", run)
        return data


class Step(BaseModel):
    """A single step of a job."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str | None = None
    uses: str | None = Field(default=None, description="Opaque action reference")
    with_: StepParameters = Field(..., alias="with")

    @property
    def params(self) -> StepParameters:
        return self.with_


class Job(BaseModel):
    """An ordered sequence of steps."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(..., exclude=True)
    name: str | None = None
    runs_on: str | list[str] | None = Field(default=None, alias="runs-on")
    env: dict[str, str] = Field(default_factory=dict)
    steps: tuple[Step, ...]

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]


class Workflow(BaseModel):
    """A parsed workflow document."""

    model_config = ConfigDict(frozen=True)

    name: str
    on: Any = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    jobs: dict[str, Job]

    def iter_steps(self) -> list[tuple[Job, Step]]:
        """All steps in job order, then document order."""
        return [(job, step) for job in self.jobs.values() for step in job.steps]
