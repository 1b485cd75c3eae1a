"""
Logging utilities for the localqa engine.

Provides structured logging with correlation fields so a query can be traced
from retrieval through generation, and a document through indexing.
"""

import contextvars
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


CORRELATION_FIELDS = ("query_id", "document_id", "run_id", "model", "runtime_state")

_current_context: contextvars.ContextVar = contextvars.ContextVar(
    "localqa_correlation", default={}
)


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured log lines.

    Each log line includes:
    - Standard log fields (timestamp, level, message, logger)
    - Correlation fields if present (query_id, document_id, run_id)
    """

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if self.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()

        for field in CORRELATION_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class CorrelationFilter(logging.Filter):
    """Copy the current CorrelationContext onto every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _current_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter that outputs human-readable log lines with correlation context.

    Format: TIMESTAMP - LOGGER - LEVEL - MESSAGE [query_id=X document_id=Y]
    """

    def __init__(self, include_timestamp: bool = True):
        if include_timestamp:
            fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        else:
            fmt = "%(name)s - %(levelname)s - %(message)s"
        super().__init__(fmt)

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with correlation context."""
        base = super().format(record)

        context_parts = []
        for field in ("query_id", "document_id", "run_id"):
            value = getattr(record, field, None)
            if value is not None:
                context_parts.append(f"{field}={value}")

        if context_parts:
            return f"{base} [{' '.join(context_parts)}]"
        return base


def configure_logging(
    level: int = logging.INFO,
    format_string: Optional[str] = None,
    include_timestamp: bool = True,
    structured: bool = False,
) -> None:
    """
    Configure logging for the localqa package.

    Args:
        level: Logging level (default: INFO)
        format_string: Custom format string (ignored if structured=True)
        include_timestamp: Whether to include timestamp in log messages
        structured: If True, output JSON-structured logs; if False, human-readable

    Example:
        >>> from localqa.core.logging import configure_logging
        >>> configure_logging(level=logging.DEBUG, structured=True)
    """
    package_logger = logging.getLogger("localqa")
    package_logger.setLevel(level)

    # Only add handler if none exist (avoid duplicate handlers)
    if not package_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(level)

        if structured:
            formatter = StructuredFormatter(include_timestamp=include_timestamp)
        elif format_string:
            formatter = logging.Formatter(format_string)
        else:
            formatter = HumanReadableFormatter(include_timestamp=include_timestamp)

        handler.setFormatter(formatter)
        handler.addFilter(CorrelationFilter())
        package_logger.addHandler(handler)


class CorrelationContext:
    """
    Context manager for adding correlation fields to log records.

    Backed by a ContextVar, so each asyncio task sees its own context.

    Example:
        >>> with CorrelationContext(query_id="abc"):
        ...     log_with_context(logger, logging.INFO, "Retrieving")
    """

    def __init__(
        self,
        query_id: Optional[str] = None,
        document_id: Optional[str] = None,
        run_id: Optional[str] = None,
        **extra: Any,
    ):
        context = {
            "query_id": query_id,
            "document_id": document_id,
            "run_id": run_id,
            **extra,
        }
        self.context = {k: v for k, v in context.items() if v is not None}
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "CorrelationContext":
        merged = dict(_current_context.get())
        merged.update(self.context)
        self._token = _current_context.set(merged)
        return self

    def __exit__(self, *args) -> None:
        if self._token is not None:
            _current_context.reset(self._token)
            self._token = None

    @staticmethod
    def get_current() -> Dict[str, Any]:
        """Get the current correlation context."""
        return dict(_current_context.get())


def log_with_context(
    logger: logging.Logger,
    level: int,
    message: str,
    **extra: Any,
) -> None:
    """
    Log a message with correlation context.

    Merges the current CorrelationContext with any extra fields provided.

    Args:
        logger: The logger to use
        level: Log level (e.g., logging.INFO)
        message: Log message
        **extra: Additional fields to include
    """
    context = CorrelationContext.get_current()
    context.update(extra)
    logger.log(level, message, extra=context)
