"""Tests for claude_runner.engine.commands."""

import json

import pytest

from claude_runner.engine.commands import (
    CancelWorkflowCommand,
    GetResumableWorkflowsCommand,
    PausePipelineCommand,
    RunnerCommandAdapter,
    RunTasksCommand,
    RunWorkflowCommand,
    TaskSpec,
    parse_command,
)
from claude_runner.enums import ConditionType, OutputFormat
from claude_runner.exceptions import CommandValidationError, UnknownCommandError


class TestParseCommand:
    """Payload validation."""

    def test_run_tasks_camel_case(self):
        command = parse_command(
            {
                "kind": "runTasks",
                "outputFormat": "stream-json",
                "parallelTasksCount": 2,
                "tasks": [
                    {"id": "a", "prompt": "plan"},
                    {"id": "b", "prompt": "build", "resumeFromTaskId": "a", "condition": "on_success"},
                ],
            }
        )

        assert isinstance(command, RunTasksCommand)
        assert command.output_format is OutputFormat.STREAM_JSON
        assert command.parallel_tasks_count == 2
        assert command.tasks[1].resume_from_task_id == "a"
        assert command.tasks[1].condition is ConditionType.ON_SUCCESS

    def test_snake_case_accepted(self):
        command = parse_command({"kind": "pausePipeline", "pipeline_id": "pipeline-1"})

        assert command == PausePipelineCommand(pipeline_id="pipeline-1")

    def test_json_string_payload(self):
        command = parse_command(json.dumps({"kind": "runWorkflow", "workflow": "review.yml", "inputs": {"x": "1"}}))

        assert isinstance(command, RunWorkflowCommand)
        assert command.inputs == {"x": "1"}

    def test_optional_pipeline_id(self):
        assert parse_command({"kind": "cancelWorkflow"}) == CancelWorkflowCommand()
        assert isinstance(parse_command({"kind": "getResumableWorkflows"}), GetResumableWorkflowsCommand)

    @pytest.mark.parametrize("payload", [{}, {"kind": "explode"}, {"kind": ["runTasks"]}, []])
    def test_unknown_kind(self, payload):
        with pytest.raises(UnknownCommandError):
            parse_command(payload)

    def test_invalid_json(self):
        with pytest.raises(CommandValidationError, match="not valid JSON"):
            parse_command("{kind:")

    def test_validation_error_names_field(self):
        with pytest.raises(CommandValidationError) as exc_info:
            parse_command({"kind": "runTasks", "tasks": [{"id": "a", "prompt": ""}]})

        assert exc_info.value.kind == "runTasks"
        assert "tasks.0.prompt" in exc_info.value.detail

    def test_empty_task_list_rejected(self):
        with pytest.raises(CommandValidationError, match="tasks"):
            parse_command({"kind": "runTasks", "tasks": []})

    @pytest.mark.parametrize("count", [0, 9])
    def test_parallel_count_bounds(self, count):
        with pytest.raises(CommandValidationError, match="parallelTasksCount|parallel_tasks_count"):
            parse_command({"kind": "runTasks", "tasks": [{"id": "a", "prompt": "x"}], "parallelTasksCount": count})

    def test_commands_serialize_with_kind(self):
        dumped = RunnerCommandAdapter.dump_python(PausePipelineCommand(pipeline_id="p"), by_alias=True)

        assert dumped == {"kind": "pausePipeline", "pipelineId": "p"}


class TestTaskSpec:
    """Conversion to runtime tasks."""

    def test_to_task_copies_fields(self):
        spec = TaskSpec(id="b", prompt="build", resume_previous=True, check="test -f plan.md", allow_all_tools=True)

        task = spec.to_task()

        assert task.id == "b"
        assert task.resume_previous is True
        assert task.check == "test -f plan.md"
        assert task.allow_all_tools is True
        assert task.status == "pending"
        assert task.attempt == 1
