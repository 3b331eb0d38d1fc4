"""
Configuration system using Pydantic for type-safe settings management.

Settings come from, in increasing priority: field defaults, a YAML file
(``RunnerSettings.from_yaml``) and ``CLAUDE_RUNNER_`` environment variables,
e.g. ``CLAUDE_RUNNER_PIPELINE__PARALLEL_TASKS_COUNT=4``.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from claude_runner.enums import OutputFormat
from claude_runner.exceptions import ConfigurationError


class ExecutorConfig(BaseModel):
    """How the assistant CLI is invoked."""

    binary: str = Field(default="claude", description="CLI executable name or path")
    default_model: str = Field(default="auto", description="Model used when a task does not name one")
    allow_all_tools: bool = Field(default=False, description="Pass --dangerously-skip-permissions")
    output_format: OutputFormat = Field(default=OutputFormat.JSON, description="CLI output format")
    max_turns: int | None = Field(default=None, ge=1, description="Limit on agentic turns per task")
    termination_grace_seconds: float = Field(
        default=5.0, gt=0.0, le=60.0, description="Seconds between SIGTERM and SIGKILL on cancel"
    )


class PipelineConfig(BaseModel):
    """Pipeline scheduling and persistence."""

    parallel_tasks_count: int | None = Field(
        default=None,
        ge=1,
        le=8,
        description="Maximum concurrently running tasks; None reads the CLI's parallelTasksCount",
    )
    state_directory: str = Field(default=".claude-runner/state", description="Directory for execution snapshots")
    workflows_directory: str = Field(default=".github/workflows", description="Directory for saved pipelines")
    persist_progress: bool = Field(default=True, description="Write a snapshot at every step boundary")
    check_timeout_seconds: float | None = Field(
        default=None, gt=0.0, description="Seconds a check command may run; None waits until it exits"
    )
    workflow_json_log: bool = Field(
        default=True, description="Keep a JSON execution log next to workflow files run from disk"
    )
    state_max_age_days: int = Field(default=7, ge=1, description="Snapshots older than this are cleaned up")


class RunnerSettings(BaseSettings):
    """Top-level settings."""

    model_config = SettingsConfigDict(
        env_prefix="CLAUDE_RUNNER_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    log_level: str = Field(default="INFO", description="Minimum log level")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment variables override values loaded from YAML
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def state_dir(self) -> Path:
        return Path(self.pipeline.state_directory)

    @property
    def workflows_dir(self) -> Path:
        return Path(self.pipeline.workflows_directory)

    @classmethod
    def from_yaml(cls, config_path: str | Path) -> RunnerSettings:
        """Load settings from YAML file with environment variable interpolation.

        Supports ``${VAR_NAME}`` and ``${VAR_NAME:-default}`` placeholders.

        Raises:
            ConfigurationError: If the file is missing, unreadable or invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file) as f:
                yaml_content = f.read()
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file: {config_path}") from e

        try:
            yaml_content = cls._interpolate_env_vars(yaml_content)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment variable reference in config: {e}") from e

        try:
            config_dict: Any = yaml.safe_load(yaml_content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax in {config_path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise ConfigurationError("Configuration must be a YAML object, not a list or scalar")

        try:
            return cls(**config_dict)
        except Exception as e:
            raise ConfigurationError(f"Failed to validate configuration: {e}") from e

    @staticmethod
    def _interpolate_env_vars(content: str) -> str:
        """Replace ``${VAR}`` / ``${VAR:-default}`` placeholders outside comment lines.

        Raises:
            ValueError: If a variable without default is not set
        """
        pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

        def replace_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            value = os.getenv(var_name)
            if value is not None:
                return value
            if default_value is not None:
                return default_value
            raise ValueError(f"Environment variable {var_name} is not set")

        def process_line(line: str) -> str:
            if line.lstrip().startswith("#"):
                return line
            return pattern.sub(replace_var, line)

        return "\n".join(process_line(line) for line in content.split("\n"))
