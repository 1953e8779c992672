"""Structured JSON logging for better observability.

Outputs logs in JSON format for easy parsing by log aggregation tools.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from .pii_redactor import PIIRedactor

# Attributes every LogRecord has; anything else on a record came from `extra`
_RECORD_ATTRS = frozenset({
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'asctime', 'taskName',
})

STANDARD_FIELDS = (
    "job_id", "job_type", "queue", "attempts",
    "status", "duration_ms", "error_code",
)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON with structured fields."""

    def __init__(self, redact_pii: bool = True):
        super().__init__()
        self.redact_pii = redact_pii

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
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
                "traceback": self._redact(self.formatException(record.exc_info)),
            }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRS or key in STANDARD_FIELDS or key.startswith('_'):
                continue
            log_obj[key] = self._redact(value)

        return json.dumps(log_obj, default=str, ensure_ascii=False)

    def _redact(self, value: Any) -> Any:
        """Redact PII from text if enabled."""
        if not self.redact_pii:
            return value
        return PIIRedactor.redact_value(value)


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds structured context to all log messages."""

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        """Add extra context to log record."""
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs

    def with_context(self, **context) -> 'StructuredLoggerAdapter':
        """Create a new adapter with additional context."""
        new_extra = {**self.extra, **context}
        return StructuredLoggerAdapter(self.logger, new_extra)


def setup_json_logging(level: str = "INFO", redact_pii: bool = True):
    """
    Configure root logger for JSON output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        redact_pii: Whether to redact PII from logs
    """
    formatter = JSONFormatter(redact_pii=redact_pii)
    _install_handler(formatter, level)


def setup_logging(settings) -> None:
    """Configure logging from settings (`log_format` json or text)."""
    if settings.log_format == "json":
        setup_json_logging(level=settings.log_level, redact_pii=True)
    else:
        _install_handler(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'),
            settings.log_level,
        )


def _install_handler(formatter: logging.Formatter, level: str) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Remove existing handlers
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # Set level for common noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_structured_logger(name: str, **context) -> StructuredLoggerAdapter:
    """
    Get a structured logger with optional context.

    Args:
        name: Logger name
        **context: Default context fields (job_id, queue, etc.)

    Returns:
        StructuredLoggerAdapter with context
    """
    logger = logging.getLogger(name)
    return StructuredLoggerAdapter(logger, context)


# Convenience function for job-scoped logging
def job_logger(job_id: str, job_type: str) -> StructuredLoggerAdapter:
    """Create a logger pre-configured for a specific job."""
    return get_structured_logger(
        f"worker.{job_type}",
        job_id=job_id,
        job_type=job_type,
        queue=job_type,
    )
