"""Configuration for claude-runner."""

from claude_runner.config.settings import ExecutorConfig, PipelineConfig, RunnerSettings

__all__ = ["ExecutorConfig", "PipelineConfig", "RunnerSettings"]
