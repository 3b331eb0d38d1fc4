"""Run single prompts through the Claude CLI as child processes.

Each call spawns one process with ``asyncio.create_subprocess_exec`` (no
shell), reads stdout and stderr concurrently as the data arrives, and
returns a ``TaskResult`` instead of raising. Cancellation sends SIGTERM and
escalates to SIGKILL after a bounded grace period.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import re
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from claude_runner.enums import OutputFormat, TaskOutcome
from claude_runner.models.task import PipelineExecutionState, TaskItem, TaskOptions, TaskResult, new_pipeline_id
from claude_runner.utils.async_subprocess import terminate_process
from claude_runner.utils.cli_detector import get_missing_cli_message, is_cli_available

if TYPE_CHECKING:
    from claude_runner.config.settings import RunnerSettings
    from claude_runner.engine.events import EventSink
    from claude_runner.engine.state_store import ExecutionStateStore
    from claude_runner.models.task import PipelineOutcome

log = structlog.get_logger(__name__)

OutputCallback = Callable[[str, str], Awaitable[None]]

RATE_LIMIT_PATTERN = re.compile(r"Claude (?:AI|Code) usage limit reached\|(\d+)")
CLI_NOT_FOUND_EXIT_CODE = 127
READ_CHUNK_SIZE = 4096


class TaskExecutor:
    """Execute prompts with the Claude CLI.

    Args:
        binary: CLI executable name or path
        cli_available: Capability check called with ``binary`` before every spawn
        termination_grace_seconds: Delay between SIGTERM and SIGKILL on cancel
        default_options: Options merged into every invocation that passes none

    Example:
        >>> executor = TaskExecutor()
        >>> result = await executor.execute_task("Summarise README.md", "auto", "/repo")
        >>> result.session_id
        '4f0c6e1a-...'
    """

    def __init__(
        self,
        binary: str = "claude",
        *,
        cli_available: Callable[[str], bool] = is_cli_available,
        termination_grace_seconds: float = 5.0,
        default_options: TaskOptions | None = None,
    ) -> None:
        self.binary = binary
        self.termination_grace_seconds = termination_grace_seconds
        self.default_options = default_options or TaskOptions()
        self._cli_available = cli_available
        # task key -> process, or None while the process is being spawned
        self._active: dict[str, asyncio.subprocess.Process | None] = {}
        self._cancelled: set[str] = set()

    @classmethod
    def from_settings(cls, settings: RunnerSettings, **kwargs: Any) -> TaskExecutor:
        config = settings.executor
        options = TaskOptions(
            output_format=config.output_format,
            allow_all_tools=config.allow_all_tools,
            max_turns=config.max_turns,
        )
        return cls(
            config.binary,
            termination_grace_seconds=config.termination_grace_seconds,
            default_options=options,
            **kwargs,
        )

    def build_command(self, prompt: str, model: str | None, options: TaskOptions | None = None) -> list[str]:
        """Assemble the argument vector for one invocation.

        System prompts and the permission prompt tool only apply to fresh
        sessions; a resumed session keeps the ones it was started with.
        """
        options = options or self.default_options
        args = [self.binary]

        if options.resume_session:
            args += ["-r", options.resume_session]
        elif options.continue_conversation:
            args.append("--continue")
        args += ["-p", prompt]

        if model and model != "auto":
            args += ["--model", model]
        if options.output_format is not OutputFormat.TEXT:
            args += ["--output-format", options.output_format.value]
        if options.max_turns:
            args += ["--max-turns", str(options.max_turns)]
        if options.verbose or options.output_format is OutputFormat.STREAM_JSON:
            args.append("--verbose")

        fresh_session = not (options.resume_session or options.continue_conversation)
        if fresh_session and options.system_prompt:
            args += ["--system-prompt", options.system_prompt]
        if fresh_session and options.append_system_prompt:
            args += ["--append-system-prompt", options.append_system_prompt]

        if options.allow_all_tools:
            args.append("--dangerously-skip-permissions")
        else:
            if options.allowed_tools:
                args += ["--allowedTools", ",".join(options.allowed_tools)]
            if options.disallowed_tools:
                args += ["--disallowedTools", ",".join(options.disallowed_tools)]

        if options.mcp_config:
            args += ["--mcp-config", options.mcp_config]
        if fresh_session and options.permission_prompt_tool:
            args += ["--permission-prompt-tool", options.permission_prompt_tool]

        return args

    async def execute_task(
        self,
        prompt: str,
        model: str | None,
        working_directory: str | Path,
        options: TaskOptions | None = None,
        *,
        task_id: str | None = None,
        on_output: OutputCallback | None = None,
    ) -> TaskResult:
        """Run one prompt and wait for the process to exit.

        Args:
            prompt: Prompt text passed with ``-p``
            model: Model name; ``auto`` or None lets the CLI choose
            working_directory: Directory the CLI runs in
            options: CLI flags; defaults to ``default_options``
            task_id: Key used by ``cancel``; generated when omitted
            on_output: Awaited with ``(stream, text)`` for each chunk read

        Returns:
            TaskResult describing success, captured output and session id.
            Missing CLI, non-zero exits and cancellation are reported through
            ``outcome`` rather than raised.
        """
        key = task_id or f"task-{uuid.uuid4().hex[:8]}"
        options = options or self.default_options
        started = time.monotonic()

        cwd = Path(working_directory)
        if not cwd.is_dir():
            log.warning("task_invalid_working_directory", task_id=key, working_directory=str(cwd))
            return self._result(key, started, TaskOutcome.RUN_FAILURE, error=f"Working directory does not exist: {cwd}")

        if not self._cli_available(self.binary):
            log.error("cli_not_available", task_id=key, binary=self.binary)
            return self._result(key, started, TaskOutcome.CLI_UNAVAILABLE, error=get_missing_cli_message(self.binary))

        args = self.build_command(prompt, model, options)
        self._active[key] = None
        try:
            if key in self._cancelled:
                return self._result(key, started, TaskOutcome.CANCELLED, error="Task cancelled before start")

            log.info(
                "task_process_starting",
                task_id=key,
                model=model or "auto",
                resume_session=options.resume_session,
                working_directory=str(cwd),
            )
            try:
                process = await asyncio.create_subprocess_exec(
                    *args,
                    cwd=str(cwd),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError:
                log.error("cli_not_found", task_id=key, binary=self.binary)
                return self._result(
                    key, started, TaskOutcome.CLI_UNAVAILABLE, error=get_missing_cli_message(self.binary)
                )
            except OSError as e:
                log.error("task_spawn_failed", task_id=key, error=str(e))
                return self._result(key, started, TaskOutcome.RUN_FAILURE, error=f"Failed to start {self.binary}: {e}")

            self._active[key] = process
            if key in self._cancelled:
                await terminate_process(process, self.termination_grace_seconds)

            try:
                stdout, stderr = await asyncio.gather(
                    self._read_stream(key, process.stdout, "stdout", on_output),
                    self._read_stream(key, process.stderr, "stderr", on_output),
                )
                exit_code = await process.wait()
            except asyncio.CancelledError:
                await terminate_process(process, self.termination_grace_seconds)
                raise

            if key in self._cancelled:
                log.info("task_cancelled", task_id=key, exit_code=exit_code)
                return self._result(
                    key,
                    started,
                    TaskOutcome.CANCELLED,
                    output=stdout,
                    error_output=stderr,
                    exit_code=exit_code,
                    error="Task cancelled",
                )
            return self._interpret(key, started, stdout, stderr, exit_code, options.output_format)
        finally:
            self._active.pop(key, None)
            self._cancelled.discard(key)

    def _interpret(
        self,
        key: str,
        started: float,
        stdout: str,
        stderr: str,
        exit_code: int,
        output_format: OutputFormat,
    ) -> TaskResult:
        reset_at = self.detect_rate_limit(stdout) or self.detect_rate_limit(stderr)
        if reset_at is not None:
            log.warning("task_rate_limited", task_id=key, reset_at=reset_at.isoformat())
            return self._result(
                key,
                started,
                TaskOutcome.RATE_LIMITED,
                output=stdout,
                error_output=stderr,
                exit_code=exit_code,
                error="Claude usage limit reached",
                rate_limit_reset=reset_at,
            )

        if exit_code == 0:
            output, session_id = self.parse_output(stdout, output_format)
            result = self._result(
                key,
                started,
                TaskOutcome.SUCCEEDED,
                output=output,
                error_output=stderr,
                exit_code=exit_code,
                session_id=session_id,
            )
            log.info(
                "task_process_completed",
                task_id=key,
                session_id=session_id,
                execution_time_ms=result.execution_time_ms,
            )
            return result

        if exit_code == CLI_NOT_FOUND_EXIT_CODE:
            log.error("cli_not_found", task_id=key, binary=self.binary, exit_code=exit_code)
            return self._result(
                key,
                started,
                TaskOutcome.CLI_UNAVAILABLE,
                output=stdout,
                error_output=stderr,
                exit_code=exit_code,
                error=get_missing_cli_message(self.binary),
            )

        error = stderr.strip() or stdout.strip() or f"Command failed with exit code {exit_code}"
        log.warning("task_process_failed", task_id=key, exit_code=exit_code, error=error[:500])
        return self._result(
            key,
            started,
            TaskOutcome.RUN_FAILURE,
            output=stdout,
            error_output=stderr,
            exit_code=exit_code,
            error=error,
        )

    async def _read_stream(
        self,
        key: str,
        stream: asyncio.StreamReader | None,
        name: str,
        on_output: OutputCallback | None,
    ) -> str:
        if stream is None:
            return ""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        parts: list[str] = []
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                parts.append(text)
                if on_output is not None:
                    try:
                        await on_output(name, text)
                    except Exception as e:
                        log.warning("output_callback_failed", task_id=key, stream=name, error=str(e))
            if not chunk:
                return "".join(parts)

    @staticmethod
    def _result(
        key: str,
        started: float,
        outcome: TaskOutcome,
        *,
        output: str = "",
        error_output: str = "",
        exit_code: int | None = None,
        session_id: str | None = None,
        error: str | None = None,
        rate_limit_reset: datetime | None = None,
    ) -> TaskResult:
        return TaskResult(
            success=outcome is TaskOutcome.SUCCEEDED,
            output=output,
            error_output=error_output,
            execution_time_ms=int((time.monotonic() - started) * 1000),
            session_id=session_id,
            exit_code=exit_code,
            outcome=outcome,
            error=error,
            rate_limit_reset=rate_limit_reset,
            task_id=key,
        )

    @staticmethod
    def parse_output(stdout: str, output_format: OutputFormat) -> tuple[str, str | None]:
        """Extract the answer text and session id from CLI output.

        ``json`` output is a single object (or, with ``--verbose``, an array of
        messages); ``stream-json`` is one object per line. In both cases the
        final ``result`` message carries ``session_id`` and ``result``.
        Unparseable output is returned verbatim with no session id.
        """
        text = stdout.strip()
        if not output_format.captures_session or not text:
            return text, None

        payload: Any = None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            for line in reversed(text.splitlines()):
                line = line.strip()
                if not line.startswith("{"):
                    continue
                try:
                    candidate = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(candidate, dict) and "session_id" in candidate:
                    payload = candidate
                    break

        if isinstance(payload, list):
            messages = [item for item in payload if isinstance(item, dict)]
            results = [item for item in messages if item.get("type") == "result"]
            payload = (results or messages or [None])[-1]

        if not isinstance(payload, dict):
            return text, None

        result = payload.get("result")
        session_id = payload.get("session_id")
        return (result if isinstance(result, str) else text), (session_id if isinstance(session_id, str) else None)

    @staticmethod
    def detect_rate_limit(text: str) -> datetime | None:
        """Reset time announced by a usage-limit message, if present."""
        match = RATE_LIMIT_PATTERN.search(text)
        if not match:
            return None
        return datetime.fromtimestamp(int(match.group(1)), UTC)

    def is_task_running(self, task_id: str | None = None) -> bool:
        if task_id is None:
            return bool(self._active)
        return task_id in self._active

    async def cancel(self, task_id: str | None = None) -> list[str]:
        """Terminate one running task, or every running task when ``task_id`` is None.

        Returns:
            Keys of the tasks that were signalled
        """
        keys = [task_id] if task_id is not None else list(self._active)
        targets = [key for key in keys if key in self._active]
        for key in targets:
            self._cancelled.add(key)
            log.info("task_cancel_requested", task_id=key)

        processes = [process for key in targets if (process := self._active.get(key)) is not None]
        await asyncio.gather(*(terminate_process(p, self.termination_grace_seconds) for p in processes))
        return targets

    async def execute_pipeline(
        self,
        tasks: Sequence[TaskItem],
        model: str,
        working_directory: str | Path,
        options: TaskOptions | None = None,
        *,
        name: str = "Pipeline",
        pipeline_id: str | None = None,
        parallel_tasks_count: int = 1,
        event_sink: EventSink | None = None,
        state_store: ExecutionStateStore | None = None,
    ) -> PipelineOutcome:
        """Run an ordered task list with this executor.

        Tasks flagged ``resume_previous`` continue the session of the nearest
        preceding completed task.
        """
        from claude_runner.engine.runner import PipelineRunner

        base_options = options or self.default_options
        state = PipelineExecutionState(
            id=pipeline_id or new_pipeline_id(),
            name=name,
            tasks=list(tasks),
            model=model,
            working_directory=str(working_directory),
            output_format=base_options.output_format,
            parallel_tasks_count=parallel_tasks_count,
        )
        runner = PipelineRunner(
            self,
            state_store=state_store,
            event_sink=event_sink,
            parallel_tasks_count=parallel_tasks_count,
            base_options=base_options,
        )
        return await runner.run(state)
