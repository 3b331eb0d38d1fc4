"""Tests for claude_runner/utils/logging_config.py."""

import json

import pytest
import structlog

from claude_runner.utils.logging_config import bind_pipeline_context, clear_pipeline_context, configure_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    clear_pipeline_context()
    structlog.reset_defaults()


def test_json_lines_on_stderr_with_pipeline_context(capsys):
    configure_logging("INFO", json_output=True)
    bind_pipeline_context("pipeline-1", source="tasks")

    structlog.get_logger("test").info("task_started", task_id="a")

    captured = capsys.readouterr()
    assert captured.out == ""
    line = json.loads(captured.err.strip())
    assert line["event"] == "task_started"
    assert line["pipeline_id"] == "pipeline-1"
    assert line["source"] == "tasks"
    assert line["level"] == "info"


def test_level_filtering(capsys):
    configure_logging("WARNING")

    logger = structlog.get_logger("test")
    logger.info("hidden")
    logger.warning("shown")

    err = capsys.readouterr().err
    assert "hidden" not in err
    assert "shown" in err


def test_clear_pipeline_context():
    bind_pipeline_context("pipeline-1")
    clear_pipeline_context()

    assert structlog.contextvars.get_contextvars() == {}
