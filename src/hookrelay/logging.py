"""Logging setup for structlog.

Every module obtains its logger with ``structlog.get_logger(__name__)`` and
emits snake_case event names with keyword context. This module only decides
the level and the output format, once per process.
"""

from __future__ import annotations

import logging

import structlog

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def normalize_log_level(level: str | None) -> tuple[str, bool]:
    """Normalize a log level string and report invalid inputs.

    Args:
        level: Raw log level string.

    Returns:
        Tuple of (normalized level, whether the input was invalid).
    """
    if not level:
        return ("INFO", True)

    normalized = level.strip().upper()
    if normalized in _LEVELS:
        return (normalized, False)

    return ("INFO", True)


def configure_logging(level: str, *, json_output: bool = True) -> str:
    """Configure structlog for the process.

    Args:
        level: Raw log level string (falls back to INFO when invalid).
        json_output: Render JSON lines instead of the console renderer.

    Returns:
        The level that was applied.
    """
    normalized, invalid = normalize_log_level(level)

    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS[normalized]),
        cache_logger_on_first_use=True,
    )

    if invalid:
        structlog.get_logger(__name__).warning(
            "invalid_log_level", requested=level, applied=normalized
        )

    return normalized
