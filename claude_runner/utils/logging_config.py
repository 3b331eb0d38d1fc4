"""
Logging configuration using structlog.

Logs go to stderr so that stdout stays free for command output. JSON
rendering is the default; ``json_output=False`` switches to the console
renderer for interactive use.
"""

import sys
from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines instead of human-readable console output
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.lower()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def bind_pipeline_context(pipeline_id: str, **extra: Any) -> None:
    """Attach ``pipeline_id`` (and any extra keys) to every log line of the current context."""
    structlog.contextvars.bind_contextvars(pipeline_id=pipeline_id, **extra)


def clear_pipeline_context() -> None:
    structlog.contextvars.clear_contextvars()
