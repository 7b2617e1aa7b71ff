"""
Structured Logging Configuration Module

One JSON object per line (or plain text for local runs) for every logger
under the `kodbank` namespace. Records emitted through log_action also carry
the caller identity and the action taken.
"""

import logging
import json
from datetime import datetime, timezone
from typing import Optional


_STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")


class JSONFormatter(logging.Formatter):
    """Renders a record and its structured fields as one JSON line"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module if hasattr(record, 'module') else record.name,
            "message": record.getMessage(),
        }
        for name in _STRUCTURED_FIELDS:
            log_entry[name] = getattr(record, name, None)

        # Remove None values
        log_entry = {k: v for k, v in log_entry.items() if v is not None}

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain text formatter that appends the action and resource when present"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record):
        line = super().format(record)
        action = getattr(record, 'action', None)
        resource = getattr(record, 'resource', None)
        if action or resource:
            line = f"{line} [{action or '-'} {resource or '-'}]"
        return line


def setup_logging(level: str = "INFO", fmt: str = "json",
                  logger_name: str = "kodbank",
                  log_file: Optional[str] = None) -> logging.Logger:
    """
    Attach a single handler to the package logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        fmt: "json" for structured output, anything else for plain text
        logger_name: Name of the root logger for the package
        log_file: Optional file path; stdout/stderr when omitted

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(logger_name)

    # Remove existing handlers to avoid duplicates
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    if log_file:
        handler = logging.FileHandler(log_file)
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if fmt == "json" else TextFormatter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "kodbank") -> logging.Logger:
    """Child loggers (kodbank.transfers, ...) inherit the package handler"""
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Emit a record carrying structured fields for the formatters.

    Args:
        logger: Logger instance
        level: Log level (info, warning, error, critical)
        message: Log message
        user_id: Identity of the caller performing the action
        action: Action being performed
        resource: Resource being acted upon
        correlation_id: Correlation ID for request tracing
        extra: Additional structured data
    """
    levelno = getattr(logging, level.upper())
    if not logger.isEnabledFor(levelno):
        return

    record = logger.makeRecord(
        logger.name, levelno, __name__, 0, message, (), None
    )

    if user_id:
        record.user_id = user_id
    if action:
        record.action = action
    if resource:
        record.resource = resource
    if correlation_id:
        record.correlation_id = correlation_id
    if extra:
        record.extra = extra

    logger.handle(record)
