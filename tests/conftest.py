"""Pytest configuration and shared fixtures."""

import asyncio
import stat
from collections import defaultdict
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from claude_runner.config.settings import RunnerSettings
from claude_runner.engine.state_store import ExecutionStateStore
from claude_runner.enums import TaskOutcome
from claude_runner.models.task import PipelineExecutionState, TaskItem, TaskOptions, TaskResult

RATE_LIMIT_EPOCH = 1767225600

FAKE_CLAUDE = """#!/bin/sh
prompt=""
resume=""
while [ $# -gt 0 ]; do
  case "$1" in
    -p) prompt="$2"; shift 2 ;;
    -r) resume="$2"; shift 2 ;;
    *) shift ;;
  esac
done
echo "$prompt|$resume|$(pwd)" >> "{log}"
case "$prompt" in
  *fail*) echo "something went wrong" >&2; exit 3 ;;
  *limit*) echo "Claude AI usage limit reached|{epoch}"; exit 1 ;;
  *missing*) exit 127 ;;
  *sleep*) exec sleep 30 ;;
esac
printf '{{"type":"result","session_id":"sess-%s","result":"done %s"}}\\n' "$prompt" "$prompt"
"""


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_store(temp_state_dir: Path) -> ExecutionStateStore:
    """ExecutionStateStore instance with temp directory."""
    return ExecutionStateStore(temp_state_dir)


@pytest.fixture
def fake_claude(tmp_path: Path) -> Path:
    """Executable stand-in for the Claude CLI.

    Every invocation appends ``prompt|resume_session|cwd`` to ``calls.log``
    next to the script. Prompts containing ``fail`` exit 3, ``limit`` print a
    usage-limit marker, ``missing`` exit 127 and ``sleep`` block for 30 seconds;
    anything else prints a JSON result with session id ``sess-<prompt>``.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    script = bin_dir / "claude"
    script.write_text(FAKE_CLAUDE.format(log=bin_dir / "calls.log", epoch=RATE_LIMIT_EPOCH))
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def claude_calls(fake_claude: Path) -> Callable[[], list[list[str]]]:
    """Invocations recorded by the fake CLI, as ``[prompt, resume_session, cwd]``."""
    log_file = fake_claude.parent / "calls.log"

    def read() -> list[list[str]]:
        if not log_file.exists():
            return []
        return [line.split("|") for line in log_file.read_text().splitlines()]

    return read


@pytest.fixture
def runner_settings(tmp_path: Path, fake_claude: Path) -> RunnerSettings:
    """Settings pointing at the fake CLI and a temporary state directory."""
    return RunnerSettings(
        executor={"binary": str(fake_claude), "termination_grace_seconds": 1.0},
        pipeline={"parallel_tasks_count": 1, "state_directory": str(tmp_path / "runner-state")},
    )


@pytest.fixture
def make_state(tmp_path: Path) -> Callable[..., PipelineExecutionState]:
    """Factory for execution states with a fixed id, running in ``tmp_path``."""

    def factory(*tasks: TaskItem, **kwargs: Any) -> PipelineExecutionState:
        kwargs.setdefault("id", "pipeline-test")
        kwargs.setdefault("name", "Test pipeline")
        kwargs.setdefault("working_directory", str(tmp_path))
        return PipelineExecutionState(tasks=list(tasks), **kwargs)

    return factory


class FakeExecutor:
    """In-memory executor for runner tests.

    Prompts decide the outcome: ``fail`` fails, ``limit`` is rate limited,
    ``block`` waits until ``release()`` or cancellation. Other prompts succeed
    after ``delay`` seconds with session id ``sess-<prompt>``.
    """

    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.default_options = TaskOptions()
        self.calls: list[dict[str, Any]] = []
        self.running = 0
        self.max_running = 0
        self.started: defaultdict[str, asyncio.Event] = defaultdict(asyncio.Event)
        self._released = asyncio.Event()
        self._cancel_events: dict[str, asyncio.Event] = {}

    def release(self) -> None:
        self._released.set()

    async def execute_task(
        self,
        prompt: str,
        model: str | None,
        working_directory: str | Path,
        options: TaskOptions | None = None,
        *,
        task_id: str | None = None,
        on_output: Any = None,
    ) -> TaskResult:
        options = options or self.default_options
        key = task_id or prompt
        cancelled = self._cancel_events.setdefault(key, asyncio.Event())
        self.calls.append(
            {
                "prompt": prompt,
                "model": model,
                "resume_session": options.resume_session,
                "working_directory": str(working_directory),
                "key": key,
            }
        )
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.started[prompt].set()
        try:
            if "block" in prompt:
                waiters = [asyncio.ensure_future(cancelled.wait()), asyncio.ensure_future(self._released.wait())]
                _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
                for waiter in pending:
                    waiter.cancel()
            else:
                try:
                    await asyncio.wait_for(cancelled.wait(), timeout=self.delay)
                except TimeoutError:
                    pass
        finally:
            self.running -= 1
            self._cancel_events.pop(key, None)

        if cancelled.is_set():
            return TaskResult(success=False, output="", outcome=TaskOutcome.CANCELLED, error="Task cancelled")
        if on_output is not None:
            await on_output("stdout", f"output of {prompt}")
        if "fail" in prompt:
            return TaskResult(
                success=False,
                output="",
                error_output="boom",
                exit_code=1,
                outcome=TaskOutcome.RUN_FAILURE,
                error="boom",
            )
        if "limit" in prompt:
            return TaskResult(
                success=False,
                output="",
                exit_code=1,
                outcome=TaskOutcome.RATE_LIMITED,
                error="Claude usage limit reached",
                rate_limit_reset=datetime.fromtimestamp(RATE_LIMIT_EPOCH, UTC),
            )
        return TaskResult(
            success=True,
            output=f"done {prompt}",
            execution_time_ms=10,
            session_id=f"sess-{prompt}",
            exit_code=0,
        )

    async def cancel(self, task_id: str | None = None) -> list[str]:
        keys = [task_id] if task_id is not None else list(self._cancel_events)
        signalled = [key for key in keys if key in self._cancel_events]
        for key in signalled:
            self._cancel_events[key].set()
        return signalled


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()
