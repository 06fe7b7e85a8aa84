"""Logging setup for purgeman.

Provides:
- JSON-formatted logs for log aggregation systems
- Human-readable console logs for operators
- Event context (routing key, entity UUID) propagated into handler tasks
- Size-based log file rotation
- Silencing for a detached background process

Usage:
    from purgeman.observability.logging import configure_logging

    configure_logging(level="INFO", json_format=False, log_path="/var/log/purgeman.log")

    with LogContext(routing_key="data-object.add", entity_id="..."):
        logger.info("Purging")  # Includes routing_key and entity_id
"""

from __future__ import annotations

import contextvars
import json
import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Any

# Context variables for event correlation
routing_key_var: contextvars.ContextVar[str] = contextvars.ContextVar("routing_key", default="")
entity_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("entity_id", default="")

LOG_FILE_MAX_BYTES = 100 * 1024 * 1024  # 100MB
LOG_FILE_BACKUP_COUNT = 3

# Skip standard LogRecord attributes when collecting extra fields
_STANDARD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """JSON log formatter with event context support.

    Output format:
    {
        "timestamp": "2026-01-10T12:34:56.789Z",
        "level": "INFO",
        "logger": "purgeman.service",
        "message": "Purging a cache for /tempZone/home/alice/file.txt",
        "module": "service",
        "function": "handle_event",
        "line": 42,
        "routing_key": "data-object.add",
        "entity_id": "7a6b..."
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        routing_key = routing_key_var.get()
        if routing_key:
            log_data["routing_key"] = routing_key

        entity_id = entity_id_var.get()
        if entity_id:
            log_data["entity_id"] = entity_id

        if record.exc_info:
            log_data["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info),
            }

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                try:
                    json.dumps(value)
                    log_data[key] = value
                except (TypeError, ValueError):
                    log_data[key] = str(value)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """Human-readable formatter for terminals and log files.

    Output format:
    2026-01-10 12:34:56 | INFO | purgeman.service | Purging a cache for /z/a | key=data-object.add
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(self, use_colors: bool = True) -> None:
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        """Format log record for console output."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        level = record.levelname

        if self.use_colors:
            color = self.COLORS.get(level, "")
            level = f"{color}{level}{self.RESET}"

        message = record.getMessage()

        context_parts = []
        routing_key = routing_key_var.get()
        if routing_key:
            context_parts.append(f"key={routing_key}")
        entity_id = entity_id_var.get()
        if entity_id:
            context_parts.append(f"uuid={entity_id}")

        context = f" | {' '.join(context_parts)}" if context_parts else ""

        result = f"{timestamp} | {level:8} | {record.name} | {message}{context}"

        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)

        return result


def configure_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_path: str | None = None,
) -> None:
    """Configure application-wide logging.

    Logs always go to stderr. When ``log_path`` is given (and is not "-"),
    they also go to a size-rotated log file.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format instead of the console format
        log_path: Optional log file path
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
        handler.close()

    stream_handler = logging.StreamHandler(sys.stderr)
    if json_format:
        stream_handler.setFormatter(JsonFormatter())
    else:
        stream_handler.setFormatter(ConsoleFormatter(use_colors=sys.stderr.isatty()))
    root_logger.addHandler(stream_handler)

    if log_path and log_path != "-":
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=LOG_FILE_MAX_BYTES,
            backupCount=LOG_FILE_BACKUP_COUNT,
        )
        if json_format:
            file_handler.setFormatter(JsonFormatter())
        else:
            file_handler.setFormatter(ConsoleFormatter(use_colors=False))
        root_logger.addHandler(file_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("irods").setLevel(logging.WARNING)


def silence_logging() -> None:
    """Stop writing logs to the console, keeping log files.

    A background child loses its stderr once the parent closes the pipe,
    so nothing may be written there afterwards. Without a log file all
    output is discarded.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            continue
        root_logger.removeHandler(handler)
        handler.close()

    if not root_logger.handlers:
        root_logger.addHandler(logging.NullHandler())


class LogContext:
    """Context manager for adding temporary event context to logs.

    Usage:
        with LogContext(routing_key="collection.mv", entity_id="abc"):
            logger.info("Handling event")
    """

    def __init__(self, routing_key: str | None = None, entity_id: str | None = None) -> None:
        self.routing_key = routing_key
        self.entity_id = entity_id
        self._tokens: list[tuple[contextvars.ContextVar[str], contextvars.Token[str]]] = []

    def __enter__(self) -> LogContext:
        if self.routing_key is not None:
            self._tokens.append((routing_key_var, routing_key_var.set(self.routing_key)))
        if self.entity_id is not None:
            self._tokens.append((entity_id_var, entity_id_var.set(self.entity_id)))
        return self

    def __exit__(self, *args: Any) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
