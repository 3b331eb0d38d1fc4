"""Capability checks for the assistant CLI.

The executor receives ``is_cli_available`` as an injectable callable so tests
and embedding hosts can substitute their own check.
"""

import shutil
import subprocess
from typing import Any

import structlog

from claude_runner.utils.async_subprocess import run_command

log = structlog.get_logger(__name__)

CLI_INFO: dict[str, Any] = {
    "name": "Claude Code",
    "binary": "claude",
    "install_cmd": "npm install -g @anthropic-ai/claude-code",
    "docs_url": "https://docs.anthropic.com/en/docs/claude-code",
}

MIN_PARALLEL_TASKS = 1
MAX_PARALLEL_TASKS = 8


def is_cli_available(binary: str = "claude") -> bool:
    """Check whether ``binary`` resolves to an executable on PATH (or is an executable path).

    Example:
        >>> if not is_cli_available():
        ...     print(get_missing_cli_message())
    """
    return shutil.which(binary) is not None


def get_missing_cli_message(binary: str = "claude") -> str:
    """Remediation text shown when the CLI cannot be found."""
    lines = [
        f"{CLI_INFO['name']} CLI '{binary}' was not found on PATH.",
        f"Install it with: {CLI_INFO['install_cmd']}",
        f"Documentation: {CLI_INFO['docs_url']}",
    ]
    if binary != CLI_INFO["binary"]:
        lines.append("Check the executor.binary setting if you use a custom location.")
    return "\n".join(lines)


async def detect_parallel_tasks_count(binary: str = "claude", timeout: float = 5.0) -> int:
    """Read ``parallelTasksCount`` from the CLI's global configuration.

    Returns:
        A value between 1 and 8, or 1 if the setting is absent, invalid
        or the CLI cannot be queried
    """
    try:
        stdout, _, _ = await run_command(
            binary, "config", "get", "--global", "parallelTasksCount", check=True, timeout=timeout
        )
    except (OSError, subprocess.CalledProcessError, TimeoutError) as e:
        log.debug("parallel_tasks_detection_failed", binary=binary, error=str(e))
        return MIN_PARALLEL_TASKS

    try:
        value = int(stdout.strip())
    except ValueError:
        log.debug("parallel_tasks_detection_invalid", binary=binary, output=stdout.strip())
        return MIN_PARALLEL_TASKS

    if MIN_PARALLEL_TASKS <= value <= MAX_PARALLEL_TASKS:
        return value
    return MIN_PARALLEL_TASKS
