"""Structured Logging Configuration.

This module provides structured logging with JSON output and context binding.
Every line carries a snake_case event name plus keyword context, e.g.:

    log.info("video_task_submitted", correlation_id="1a2b3c4d", task_id="...")

Context values that are not JSON serializable (UUIDs, datetimes, enums) are
rendered with str() instead of breaking the log call.
"""

import json
import logging
import sys
import uuid
from typing import Any


class StructuredLogger:
    """Wrapper around standard Logger with structured JSON logging support."""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _format_json(self, event: str, **kwargs: Any) -> str:
        """Format log entry as JSON with event and context fields."""
        log_entry = {"event": event, **kwargs}
        return json.dumps(log_entry, default=str)

    def _log(self, level: int, event: str, **kwargs: Any) -> None:
        exc_info = kwargs.pop("exc_info", False)
        self._logger.log(level, self._format_json(event, **kwargs), exc_info=exc_info)

    def info(self, event: str, **kwargs: Any) -> None:
        """Log info message with structured context as JSON."""
        self._log(logging.INFO, event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        """Log error message with structured context as JSON."""
        self._log(logging.ERROR, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        """Log warning message with structured context as JSON."""
        self._log(logging.WARNING, event, **kwargs)

    def debug(self, event: str, **kwargs: Any) -> None:
        """Log debug message with structured context as JSON."""
        self._log(logging.DEBUG, event, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance for the given module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Configured StructuredLogger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

    return StructuredLogger(logger)


def new_correlation_id() -> str:
    """Short id used to tie submit/poll/chain log lines of one call together."""
    return str(uuid.uuid4())[:8]
