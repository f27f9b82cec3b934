"""
Structured logging for the engine.

All engine components log through one JSON-formatted logger so the
coordination layer can ingest degraded assignments, reroutes and capacity
warnings as machine-readable records.
"""

import logging
import os
from typing import Any, Optional

from pythonjsonlogger import jsonlogger


LOGGER_NAME = "evacflow"

# Keys reserved by logging.LogRecord; passing them in `extra` raises KeyError
_RESERVED_KEYS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
    'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
    'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
    'processName', 'process', 'message', 'asctime', 'taskName',
})


def _parse_level(name: str) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else logging.INFO


def get_logger(level: Optional[str] = None) -> logging.Logger:
    """
    Get the engine logger, configuring it on first use.

    Args:
        level: Log level name; falls back to EVACFLOW_LOG_LEVEL, then INFO.
    """
    logger = logging.getLogger(LOGGER_NAME)

    if getattr(logger, "_configured", False):
        if level is not None:
            logger.setLevel(_parse_level(level))
        return logger

    logger.setLevel(_parse_level(level or os.environ.get("EVACFLOW_LOG_LEVEL", "INFO")))

    handler = logging.StreamHandler()
    handler.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logger.addHandler(handler)

    logger._configured = True  # type: ignore[attr-defined]
    return logger


def log_event(event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Log a structured event; the event name is both message and a field."""
    extra = {
        (f"field_{key}" if key in _RESERVED_KEYS else key): value
        for key, value in fields.items()
    }
    get_logger().log(level, event, extra={"event": event, **extra})


def log_warning(event: str, **fields: Any) -> None:
    log_event(event, level=logging.WARNING, **fields)
