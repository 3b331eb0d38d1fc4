"""Async subprocess utilities.

Non-blocking helpers for the short commands the engine runs besides the
assistant CLI itself: condition check commands and CLI configuration
lookups. Long-running CLI invocations use streamed reads in
``claude_runner.engine.executor`` instead.

This module offers:
    - run_command: Execute commands with list arguments (no shell)
    - run_shell_command: Execute shell command strings (pipes, ``&&``, ...)
    - terminate_process: SIGTERM, then SIGKILL after a grace period

Example:
    >>> from claude_runner.utils.async_subprocess import run_shell_command
    >>> _, _, code = await run_shell_command("test -f report.md", cwd="/repo", check=False)
    >>> passed = code == 0
"""

import asyncio
import contextlib
import os
import signal
import subprocess
from pathlib import Path


def _kill(process: asyncio.subprocess.Process, process_group: bool) -> None:
    with contextlib.suppress(ProcessLookupError):
        if process_group:
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()


async def _collect(
    process: asyncio.subprocess.Process,
    command: str | tuple[str, ...],
    check: bool,
    timeout: float | None,
    *,
    process_group: bool = False,
) -> tuple[str, str, int]:
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (TimeoutError, asyncio.CancelledError):
        _kill(process, process_group)
        await process.wait()
        raise

    stdout = (stdout_bytes or b"").decode("utf-8", errors="replace")
    stderr = (stderr_bytes or b"").decode("utf-8", errors="replace")

    if check and process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode or 1, command, stdout, stderr)

    return stdout, stderr, process.returncode or 0


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a command asynchronously without shell interpolation.

    Args:
        *args: Executable followed by its arguments
        cwd: Working directory, or None for the current one
        check: Raise CalledProcessError on a non-zero exit code
        timeout: Seconds before the process is killed; None waits indefinitely

    Returns:
        Tuple of (stdout, stderr, return_code), decoded as UTF-8 with replacement

    Raises:
        subprocess.CalledProcessError: If check=True and the command exits non-zero
        TimeoutError: If timeout is exceeded (the process is killed first)
        FileNotFoundError: If the executable is not found
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    return await _collect(process, args, check, timeout)


async def run_shell_command(
    command: str,
    *,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> tuple[str, str, int]:
    """Run a shell command string asynchronously via ``/bin/sh -c``.

    A command that does not exist is reported by the shell as exit code 127
    rather than an exception; a missing ``cwd`` still raises.

    The shell leads its own process group. On timeout or cancellation the
    whole group is killed, including background children of the command.

    Raises:
        subprocess.CalledProcessError: If check=True and the command exits non-zero
        TimeoutError: If timeout is exceeded
        OSError: If the shell cannot be started in ``cwd``

    Warning:
        The command is subject to shell parsing. Check commands come from the
        workflow author, never from assistant output.
    """
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    return await _collect(process, command, check, timeout, process_group=True)


async def terminate_process(process: asyncio.subprocess.Process, grace_seconds: float) -> int | None:
    """Ask ``process`` to exit with SIGTERM, escalating to SIGKILL.

    Args:
        process: Running child process
        grace_seconds: How long to wait after SIGTERM before killing

    Returns:
        The exit code, or None if the process could not be reaped
    """
    if process.returncode is not None:
        return process.returncode

    with contextlib.suppress(ProcessLookupError):
        process.terminate()

    try:
        return await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        return await process.wait()
