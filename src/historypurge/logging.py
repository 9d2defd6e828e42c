"""Structured logging: one JSON event per line on stdout."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON object for unattended, long-running purges."""

    def format(self, record: logging.LogRecord) -> str:
        event: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info and record.exc_info[0] is not None:
            event["error_type"] = record.exc_info[0].__name__
            event["error"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            event["extra_fields"] = extra_fields

        # Paths and timestamps in context fields are rendered with str()
        return json.dumps(event, default=str)


def setup_logging(
    logger_name: str = "historypurge", level: str = "INFO", stream: Optional[TextIO] = None
) -> logging.Logger:
    """
    Configure a JSON logger.

    Calling this again for the same logger only changes its level.

    Args:
        logger_name: Name of the logger
        level: One of DEBUG, INFO, WARNING, ERROR, CRITICAL
        stream: Output stream, stdout by default

    Raises:
        ValueError: If level is not a known level name
    """
    level_name = level.upper()
    if level_name not in LEVELS:
        raise ValueError(f"Unknown log level: {level!r}")

    logger = logging.getLogger(logger_name)
    logger.setLevel(level_name)

    if not logger.handlers:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)

    return logger


def log_with_context(
    logger: logging.Logger, level: str, message: str, extra: Optional[Dict[str, Any]] = None
) -> None:
    """
    Log a message with context fields.

    Args:
        logger: Logger instance
        level: Method name of the level (info, warning, error, ...)
        message: Human-readable message
        extra: Fields rendered under ``extra_fields`` in the JSON event
    """
    getattr(logger, level.lower())(message, extra={"extra_fields": dict(extra or {})})


def log_remote_failure(
    logger: logging.Logger,
    level: str,
    message: str,
    error: BaseException,
    path: Optional[str] = None,
    **fields: Any,
) -> None:
    """Log a contained remote failure with its path and error kind."""
    extra: Dict[str, Any] = {}
    if path is not None:
        extra["path"] = path
    extra["error_kind"] = type(error).__name__
    extra["error"] = str(error)
    extra.update(fields)
    log_with_context(logger, level, message, extra)
