"""
Structured logging configuration for the retrieval service.

JSON lines in production, a readable single-line format in development.
Every record carries the correlation ID of the request (or background job)
that produced it.

Usage:
    from retrieval_service.shared.logging_config import setup_logging

    # At application startup (main.py):
    setup_logging(service_name="knowledge-retrieval-service")

    # In modules:
    logger = logging.getLogger("Retrieval.Knowledge.Retriever")
    logger.info("Vector search done", extra={"hits": 4, "knowledge_base_id": kb_id})

Output format (JSON, one line per log):
    {
        "timestamp": "2026-01-28T10:30:00.123456+00:00",
        "level": "WARNING",
        "logger": "Retrieval.Knowledge.Embeddings",
        "message": "Embedding provider failed",
        "service": "knowledge-retrieval-service",
        "correlation_id": "abc123",
        "provider": "openai",
        "reason": "timeout"
    }
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from retrieval_service.core.config import settings
from retrieval_service.shared.correlation import get_correlation_id

# Attributes every LogRecord has; anything else was passed through ``extra``.
_STANDARD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "correlation_id", "message", "taskName",
})

_NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "hpack",
    "openai",
    "postgrest",
    "asyncio",
)


def _extra_fields(record: logging.LogRecord) -> dict:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


class CorrelationIdFilter(logging.Filter):
    """Inject the current correlation_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line: fixed fields first, then the record's ``extra``."""

    def __init__(self, service_name: str = "knowledge-retrieval-service"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        if getattr(record, "correlation_id", "-") != "-":
            payload["correlation_id"] = record.correlation_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        payload.update(_extra_fields(record))
        # default=str keeps enums, datetimes and models from breaking a log line
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``time [LEVEL] [correlation] logger: message | key=value, ...``"""

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = (
            f"{when} [{record.levelname}] [{getattr(record, 'correlation_id', '-')}] "
            f"{record.name}: {record.getMessage()}"
        )
        extras = _extra_fields(record)
        if extras:
            line += " | " + ", ".join(f"{key}={value}" for key, value in extras.items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    service_name: str,
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
) -> None:
    """
    Route all logging to stdout through one handler.

    Args:
        service_name: Value of the ``service`` field in JSON output
        level: Log level name; defaults to ``settings.LOG_LEVEL``
        json_output: JSON lines unless ``settings.ENVIRONMENT`` is "development"
    """
    level = (level or settings.LOG_LEVEL).upper()
    if json_output is None:
        json_output = settings.ENVIRONMENT != "development"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name) if json_output else HumanReadableFormatter())
    handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level, logging.INFO))

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("Retrieval.Logging").info(
        "Logging configured",
        extra={"log_level": level, "json_output": json_output, "environment": settings.ENVIRONMENT},
    )
