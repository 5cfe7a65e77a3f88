"""
Structured logging configuration.

Configures structlog on top of stdlib logging handlers so the guard's events
(retries, breaker transitions, budget decisions, alerts) render either as
human-readable console lines or as JSON for log shippers.
"""

import logging
import sys
from pathlib import Path
from typing import List, Optional, Union

import structlog

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_FORMATS = {"console", "json"}


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    log_file: Optional[Union[str, Path]] = None
) -> None:
    """Configure structlog for the application.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: "console" for human-readable output or "json"
        log_file: Optional file path for log output in addition to stderr

    Raises:
        ValueError: If level or fmt is not recognized
    """
    level_upper = level.upper()
    if level_upper not in _VALID_LEVELS:
        raise ValueError(
            f"Invalid log level: {level!r}. Must be one of {sorted(_VALID_LEVELS)}"
        )
    if fmt not in _VALID_FORMATS:
        raise ValueError(
            f"Invalid log format: {fmt!r}. Must be one of {sorted(_VALID_FORMATS)}"
        )

    numeric_level = getattr(logging, level_upper)

    shared_processors: List[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(numeric_level)
    root_logger.addHandler(stderr_handler)

    if log_file:
        file_handler = logging.FileHandler(str(log_file), encoding="utf-8")
        file_handler.setLevel(numeric_level)
        root_logger.addHandler(file_handler)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    for handler in root_logger.handlers:
        handler.setFormatter(formatter)


def bind_execution_context(**values: object) -> None:
    """Bind execution-scoped fields (agent, tenant, request id) to all log entries."""
    structlog.contextvars.bind_contextvars(**values)


def clear_execution_context(*keys: str) -> None:
    """Remove execution-scoped fields bound by bind_execution_context."""
    structlog.contextvars.unbind_contextvars(*keys)
