"""Structured JSON logging for the observability pipeline.

Outputs one JSON object per line; lifecycle events (job.completed,
breaker.opened, queue.health, ...) carry an ``event`` field so they can be
filtered downstream.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional, TYPE_CHECKING

from .pii_redactor import PIIRedactor

if TYPE_CHECKING:
    from worker_service.queue.models import Job


# Attributes every LogRecord has; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset([
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'asctime', 'taskName',
])

STANDARD_FIELDS = [
    "event", "job_id", "queue", "attempt", "correlation_id",
    "state", "duration_ms", "error_code", "breaker",
]


class JSONFormatter(logging.Formatter):
    """Format log records as JSON with structured fields."""

    def __init__(self, redact_pii: bool = True):
        super().__init__()
        self.redact_pii = redact_pii

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._redact(record.getMessage()),
        }

        for field in STANDARD_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = value

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": self._redact(str(record.exc_info[1])) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key.startswith('_') or key in STANDARD_FIELDS:
                continue
            log_obj[key] = self._redact(value)

        return json.dumps(log_obj, default=str, ensure_ascii=False)

    def _redact(self, value: Any) -> Any:
        if not self.redact_pii:
            return value
        return PIIRedactor.redact_value(value)


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds structured context to all log messages."""

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get('extra') or {})
        kwargs['extra'] = extra
        return msg, kwargs

    def with_context(self, **context) -> 'StructuredLoggerAdapter':
        """Create a new adapter with additional context."""
        return StructuredLoggerAdapter(self.logger, {**self.extra, **context})


def setup_json_logging(level: str = "INFO", redact_pii: bool = True):
    """
    Configure root logger for JSON output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        redact_pii: Whether to redact recipient data from logs
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(redact_pii=redact_pii))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def setup_logging(level: str = "INFO", log_format: str = "json"):
    """Configure logging from the ``log_format`` setting."""
    if log_format == "json":
        setup_json_logging(level=level, redact_pii=True)
    else:
        logging.basicConfig(
            level=getattr(logging, level.upper(), logging.INFO),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )


def get_structured_logger(name: str, **context) -> StructuredLoggerAdapter:
    """
    Get a structured logger with optional context.

    Args:
        name: Logger name
        **context: Default context fields (job_id, queue, etc.)
    """
    return StructuredLoggerAdapter(logging.getLogger(name), context)


def job_logger(job: "Job", name: Optional[str] = None) -> StructuredLoggerAdapter:
    """Create a logger pre-bound to a job's id, queue and correlation id."""
    return get_structured_logger(
        name or f"worker.{job.queue_name}",
        job_id=job.id,
        queue=job.queue_name,
        correlation_id=job.correlation_id,
    )
