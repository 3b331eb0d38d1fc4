"""claude-runner: pausable, session-chaining pipelines for the Claude CLI."""

__version__ = "0.3.0"
