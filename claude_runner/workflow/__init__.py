"""Workflow document parsing, validation and session references."""

from claude_runner.workflow.parser import WorkflowParser
from claude_runner.workflow.session_reference import get_session_reference

__all__ = ["WorkflowParser", "get_session_reference"]
