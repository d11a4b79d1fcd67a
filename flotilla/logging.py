"""structlog configuration for the flotilla CLI and embedding applications."""

from __future__ import annotations

import logging
import sys
from typing import TextIO

import structlog

from flotilla.execution.logs import capture_processor


def configure_logging(
    level: str = "INFO",
    fmt: str = "console",
    *,
    stream: TextIO | None = None,
) -> None:
    """Install the flotilla processor chain, capture processor included."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level!r}")

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        capture_processor,
        structlog.processors.StackInfoRenderer(),
    ]
    if fmt == "json":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    elif fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        raise ValueError(f"Unknown log format: {fmt!r}")

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stderr),
        cache_logger_on_first_use=False,
    )
