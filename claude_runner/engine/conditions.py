"""Condition gating evaluated before a task starts."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

import structlog

from claude_runner.enums import ConditionType, TaskStatus
from claude_runner.models.task import TaskItem
from claude_runner.utils.async_subprocess import run_shell_command

log = structlog.get_logger(__name__)


@dataclass
class ConditionDecision:
    should_run: bool
    reason: str | None = None


class ConditionEvaluator:
    """Decide whether a task runs, given its condition and the previous outcome.

    ``always`` runs unconditionally. ``on_success`` runs when the check
    command exits 0, or, without a check command, when the nearest preceding
    non-skipped task completed (no preceding task counts as success).
    ``on_failure`` is the negation. A check command that cannot be executed
    counts as a failed check. A cancelled predecessor is neither success nor
    failure, so tasks gated on it without a check command are skipped.

    Args:
        check_timeout: Seconds a check command may run before it counts as failed;
            None lets it run until it exits
    """

    def __init__(self, check_timeout: float | None = None) -> None:
        self.check_timeout = check_timeout

    async def evaluate(
        self,
        task: TaskItem,
        previous_status: TaskStatus | None,
        working_directory: str | Path,
    ) -> ConditionDecision:
        if task.condition is ConditionType.ALWAYS:
            return ConditionDecision(True)

        if task.check:
            passed, detail = await self.run_check(task.check, working_directory, task_id=task.id)
        elif previous_status is TaskStatus.CANCELLED:
            return ConditionDecision(False, f"Condition {task.condition} not evaluated: previous task was cancelled")
        else:
            passed = previous_status in (None, TaskStatus.COMPLETED)
            detail = "previous task succeeded" if passed else f"previous task ended with status {previous_status}"

        should_run = passed if task.condition is ConditionType.ON_SUCCESS else not passed
        if should_run:
            log.debug("condition_met", task_id=task.id, condition=str(task.condition), detail=detail)
            return ConditionDecision(True)
        return ConditionDecision(False, f"Condition {task.condition} not met: {detail}")

    async def run_check(
        self, command: str, working_directory: str | Path, *, task_id: str | None = None
    ) -> tuple[bool, str]:
        """Run a check command through the shell.

        Returns:
            Tuple of (passed, human-readable detail)
        """
        try:
            _, stderr, code = await run_shell_command(
                command, cwd=working_directory, check=False, timeout=self.check_timeout
            )
        except (OSError, TimeoutError, subprocess.SubprocessError) as e:
            reason = str(e) or type(e).__name__
            log.warning("condition_check_unrunnable", task_id=task_id, command=command, error=reason)
            return False, f"check command could not be executed ({reason})"

        log.info("condition_check_finished", task_id=task_id, command=command, exit_code=code)
        if code == 0:
            return True, "check command succeeded"
        detail = f"check command exited with {code}"
        if stderr.strip():
            detail = f"{detail}: {stderr.strip().splitlines()[-1][:200]}"
        return False, detail
