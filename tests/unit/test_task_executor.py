"""Tests for claude_runner.engine.executor."""

import asyncio
import json
from datetime import UTC, datetime

import pytest

from claude_runner.config.settings import RunnerSettings
from claude_runner.engine.executor import TaskExecutor
from claude_runner.enums import OutputFormat, PipelineStatus, TaskOutcome, TaskStatus
from claude_runner.models.task import TaskItem, TaskOptions

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def executor(fake_claude):
    return TaskExecutor(str(fake_claude), termination_grace_seconds=1.0)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.02)

    await asyncio.wait_for(poll(), timeout=timeout)


# =============================================================================
# Command construction
# =============================================================================


class TestBuildCommand:
    """Argument vectors passed to the CLI."""

    def test_minimal_command(self):
        executor = TaskExecutor("claude")

        args = executor.build_command("hello", "auto", TaskOptions(output_format=OutputFormat.TEXT))

        assert args == ["claude", "-p", "hello"]

    def test_model_and_format(self):
        args = TaskExecutor().build_command("hello", "sonnet", TaskOptions(output_format=OutputFormat.JSON))

        assert args == ["claude", "-p", "hello", "--model", "sonnet", "--output-format", "json"]

    def test_stream_json_implies_verbose(self):
        args = TaskExecutor().build_command("hi", None, TaskOptions(output_format=OutputFormat.STREAM_JSON))

        assert args[-3:] == ["--output-format", "stream-json", "--verbose"]

    def test_resume_session_precedes_prompt(self):
        args = TaskExecutor().build_command("next", "auto", TaskOptions(resume_session="sess-1"))

        assert args[:5] == ["claude", "-r", "sess-1", "-p", "next"]

    def test_continue_conversation(self):
        args = TaskExecutor().build_command("next", "auto", TaskOptions(continue_conversation=True))

        assert args[1] == "--continue"

    def test_system_prompts_only_for_fresh_sessions(self):
        options = TaskOptions(system_prompt="Be brief", append_system_prompt="Use British spelling")

        fresh = TaskExecutor().build_command("a", "auto", options)
        resumed = TaskExecutor().build_command("a", "auto", TaskOptions(resume_session="s", system_prompt="Be brief"))

        assert "--system-prompt" in fresh
        assert "--append-system-prompt" in fresh
        assert "--system-prompt" not in resumed

    def test_allow_all_tools_overrides_tool_lists(self):
        options = TaskOptions(allow_all_tools=True, allowed_tools=["Read"], disallowed_tools=["Bash"])

        args = TaskExecutor().build_command("a", "auto", options)

        assert "--dangerously-skip-permissions" in args
        assert "--allowedTools" not in args

    def test_tool_lists(self):
        options = TaskOptions(allowed_tools=["Read", "Edit"], disallowed_tools=["Bash"], max_turns=3)

        args = TaskExecutor().build_command("a", "auto", options)

        assert args[args.index("--allowedTools") + 1] == "Read,Edit"
        assert args[args.index("--disallowedTools") + 1] == "Bash"
        assert args[args.index("--max-turns") + 1] == "3"

    def test_mcp_and_permission_tool(self):
        options = TaskOptions(mcp_config="mcp.json", permission_prompt_tool="mcp__auth__prompt")

        fresh = TaskExecutor().build_command("a", "auto", options)
        resumed = TaskExecutor().build_command(
            "a", "auto", TaskOptions(resume_session="s", mcp_config="mcp.json", permission_prompt_tool="x")
        )

        assert "--permission-prompt-tool" in fresh
        assert "--mcp-config" in resumed
        assert "--permission-prompt-tool" not in resumed

    def test_from_settings(self):
        settings = RunnerSettings(executor={"binary": "/opt/claude", "allow_all_tools": True, "max_turns": 5})

        executor = TaskExecutor.from_settings(settings)

        assert executor.binary == "/opt/claude"
        assert executor.default_options.allow_all_tools is True
        assert executor.default_options.max_turns == 5


# =============================================================================
# Output parsing
# =============================================================================


class TestParseOutput:
    """Session id and answer extraction."""

    def test_json_object(self):
        stdout = json.dumps({"type": "result", "session_id": "abc", "result": "All good"})

        assert TaskExecutor.parse_output(stdout, OutputFormat.JSON) == ("All good", "abc")

    def test_json_message_list(self):
        stdout = json.dumps(
            [
                {"type": "system", "session_id": "abc"},
                {"type": "assistant", "message": {}},
                {"type": "result", "session_id": "abc", "result": "Final"},
            ]
        )

        assert TaskExecutor.parse_output(stdout, OutputFormat.JSON) == ("Final", "abc")

    def test_stream_json_uses_last_result_line(self):
        lines = [
            json.dumps({"type": "system", "session_id": "s1"}),
            json.dumps({"type": "assistant", "message": {"content": "thinking"}}),
            json.dumps({"type": "result", "session_id": "s1", "result": "Done"}),
        ]

        assert TaskExecutor.parse_output("\n".join(lines), OutputFormat.STREAM_JSON) == ("Done", "s1")

    def test_text_output_has_no_session(self):
        assert TaskExecutor.parse_output("  plain answer \n", OutputFormat.TEXT) == ("plain answer", None)

    def test_unparseable_json_is_returned_verbatim(self):
        assert TaskExecutor.parse_output("not json", OutputFormat.JSON) == ("not json", None)

    def test_detect_rate_limit(self):
        reset = TaskExecutor.detect_rate_limit("Claude Code usage limit reached|1767225600")

        assert reset == datetime(2026, 1, 1, tzinfo=UTC)
        assert TaskExecutor.detect_rate_limit("usage limit reached") is None


# =============================================================================
# Process execution
# =============================================================================


class TestExecuteTask:
    """Running the fake CLI as a child process."""

    @pytest.mark.asyncio
    async def test_success_captures_session(self, executor, tmp_path, claude_calls):
        result = await executor.execute_task("hello", "auto", tmp_path, TaskOptions(output_format=OutputFormat.JSON))

        assert result.success is True
        assert result.outcome is TaskOutcome.SUCCEEDED
        assert result.session_id == "sess-hello"
        assert result.output == "done hello"
        assert result.exit_code == 0
        assert result.execution_time_ms >= 0
        assert claude_calls() == [["hello", "", str(tmp_path)]]

    @pytest.mark.asyncio
    async def test_resume_session_is_passed(self, executor, tmp_path, claude_calls):
        await executor.execute_task("next", "auto", tmp_path, TaskOptions(resume_session="sess-hello"))

        assert claude_calls()[0][:2] == ["next", "sess-hello"]

    @pytest.mark.asyncio
    async def test_output_is_streamed(self, executor, tmp_path):
        chunks = []

        async def on_output(stream, text):
            chunks.append((stream, text))

        await executor.execute_task("hello", "auto", tmp_path, on_output=on_output)

        assert "".join(text for stream, text in chunks if stream == "stdout").startswith('{"type":"result"')

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_run_failure(self, executor, tmp_path):
        result = await executor.execute_task("please fail", "auto", tmp_path)

        assert result.success is False
        assert result.outcome is TaskOutcome.RUN_FAILURE
        assert result.exit_code == 3
        assert result.error == "something went wrong"
        assert "something went wrong" in result.error_output

    @pytest.mark.asyncio
    async def test_exit_127_is_cli_unavailable(self, executor, tmp_path):
        result = await executor.execute_task("missing", "auto", tmp_path)

        assert result.outcome is TaskOutcome.CLI_UNAVAILABLE
        assert "npm install" in result.error

    @pytest.mark.asyncio
    async def test_failed_capability_check_spawns_nothing(self, fake_claude, tmp_path, claude_calls):
        executor = TaskExecutor(str(fake_claude), cli_available=lambda binary: False)

        result = await executor.execute_task("hello", "auto", tmp_path)

        assert result.outcome is TaskOutcome.CLI_UNAVAILABLE
        assert claude_calls() == []

    @pytest.mark.asyncio
    async def test_missing_binary_is_cli_unavailable(self, tmp_path):
        executor = TaskExecutor(str(tmp_path / "no-such-claude"), cli_available=lambda binary: True)

        result = await executor.execute_task("hello", "auto", tmp_path)

        assert result.outcome is TaskOutcome.CLI_UNAVAILABLE
        assert result.success is False

    @pytest.mark.asyncio
    async def test_invalid_working_directory(self, executor, tmp_path):
        result = await executor.execute_task("hello", "auto", tmp_path / "missing")

        assert result.outcome is TaskOutcome.RUN_FAILURE
        assert "does not exist" in result.error

    @pytest.mark.asyncio
    async def test_rate_limit_is_detected(self, executor, tmp_path):
        result = await executor.execute_task("hit the limit", "auto", tmp_path)

        assert result.outcome is TaskOutcome.RATE_LIMITED
        assert result.rate_limit_reset == datetime(2026, 1, 1, tzinfo=UTC)


class TestCancel:
    """Terminating running processes."""

    @pytest.mark.asyncio
    async def test_cancel_running_task(self, executor, tmp_path, claude_calls):
        run = asyncio.create_task(executor.execute_task("sleep", "auto", tmp_path, task_id="t1"))
        await wait_until(lambda: bool(claude_calls()) and executor.is_task_running("t1"))

        cancelled = await executor.cancel("t1")
        result = await asyncio.wait_for(run, timeout=10)

        assert cancelled == ["t1"]
        assert result.outcome is TaskOutcome.CANCELLED
        assert result.success is False
        assert not executor.is_task_running()

    @pytest.mark.asyncio
    async def test_cancel_all(self, executor, tmp_path, claude_calls):
        runs = [
            asyncio.create_task(executor.execute_task("sleep", "auto", tmp_path, task_id=key)) for key in ("a", "b")
        ]
        await wait_until(lambda: len(claude_calls()) == 2)

        cancelled = await executor.cancel()
        results = await asyncio.wait_for(asyncio.gather(*runs), timeout=10)

        assert sorted(cancelled) == ["a", "b"]
        assert {r.outcome for r in results} == {TaskOutcome.CANCELLED}

    @pytest.mark.asyncio
    async def test_cancel_unknown_task(self, executor):
        assert await executor.cancel("nope") == []


# =============================================================================
# Pipelines
# =============================================================================


class TestExecutePipeline:
    """Running task lists through the executor."""

    @pytest.mark.asyncio
    async def test_resume_previous_chains_sessions(self, executor, tmp_path, claude_calls):
        tasks = [
            TaskItem(id="first", prompt="first"),
            TaskItem(id="second", prompt="second", resume_previous=True),
        ]

        outcome = await executor.execute_pipeline(tasks, "auto", tmp_path)

        assert outcome.status is PipelineStatus.COMPLETED
        assert [t.status for t in outcome.tasks] == [TaskStatus.COMPLETED, TaskStatus.COMPLETED]
        assert outcome.task("second").session_id == "sess-second"
        assert [call[:2] for call in claude_calls()] == [["first", ""], ["second", "sess-first"]]
