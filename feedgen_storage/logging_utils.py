"""
Structured JSON logging utilities.

Feed generators usually run as containers whose stdout is collected by a log
pipeline, so records are emitted as single-line JSON objects. Context such as
``uri``, ``cursor`` or ``service`` travels in ``extra`` and becomes top-level
keys of the object.
"""

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, Any

PACKAGE_LOGGER = "feedgen_storage"

# LogRecord attributes that are never copied into the JSON object
_RESERVED_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "pathname", "process", "processName", "relativeCreated",
        "stack_info", "exc_info", "exc_text", "thread", "threadName",
        "taskName", "message",
    }
)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredJsonFormatter(logging.Formatter):
    """
    One JSON object per record.

    Keys: ``timestamp`` (UTC ISO-8601 of when the record was created),
    ``level``, ``logger``, ``message``, ``exception`` when exc_info is set,
    then every ``extra`` field. Values that json cannot encode are stringified.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        log_obj.update(
            (key, _jsonable(value))
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        )
        return json.dumps(log_obj, default=str)


def configure_structured_logging(
    level: int | str = logging.INFO,
    logger_name: str | None = PACKAGE_LOGGER,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    Send a logger's records to ``stream`` (default stdout) as JSON lines.

    Args:
        level: Level number or name (``"DEBUG"``, ``"info"``...)
        logger_name: Logger to configure; None for the root logger
        stream: Output stream

    Returns:
        The configured logger

    Raises:
        ValueError: Unknown level name
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    logger = logging.getLogger(logger_name)
    # Replace, so repeated calls do not duplicate output
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


class StorageLoggerAdapter(logging.LoggerAdapter):
    """
    Stamps fixed context on every record from one component.

    The ingestion pipeline uses it to tag records with its ``service``.
    Fixed context wins over a per-call ``extra`` key of the same name; the
    caller's dict is left untouched.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**(kwargs.get("extra") or {}), **self.extra}
        return msg, kwargs
