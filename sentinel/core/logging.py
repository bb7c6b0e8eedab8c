"""
Structured logging configuration.

- **JSON structured logging** - one machine-parsable JSON object per line on
  stdout, ready for whatever collects container output.
- **Console handler** - human-readable coloured output, selected by
  ``LOG_PRETTY`` (on by default in development).
- **Redaction** - authorization headers, password fields and response bodies
  are replaced with ``[REDACTED]`` before a record is formatted, in every
  tier.
- **Service context** - every record carries ``env`` and ``service``.
- **Lifecycle sub-logger** - ``sentinel.lifecycle`` never filters below
  WARNING, so startup/shutdown events stay visible at ``LOG_LEVEL=ERROR``.

Usage:
    Call ``setup_logging(config)`` once during startup (``sentinel.main``).
    Modules log through ``logging.getLogger(__name__)`` as usual.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Mapping

if TYPE_CHECKING:
    from sentinel.core.config import ServiceConfig

REDACTED = "[REDACTED]"
LIFECYCLE_LOGGER = "sentinel.lifecycle"

_HANDLER_NAME = "sentinel"

# Structured fields copied from ``extra=`` onto the output, in this order
_EXTRA_FIELDS = (
    "event",
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "signal",
    "req",
    "res",
)


def _is_sensitive(key: Any) -> bool:
    lowered = str(key).lower()
    return lowered == "authorization" or "password" in lowered


def redact(value: Any) -> Any:
    """
    Return a copy of ``value`` with sensitive entries masked.

    Masks any ``authorization`` key (headers) and any key containing
    ``password`` at any depth.
    """
    if isinstance(value, Mapping):
        return {
            key: REDACTED if _is_sensitive(key) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def redact_response(value: Any) -> Any:
    """Like :func:`redact`, and the response body is never logged."""
    cleaned = redact(value)
    if isinstance(cleaned, dict) and "body" in cleaned:
        cleaned["body"] = REDACTED
    return cleaned


class RedactingFilter(logging.Filter):
    """Mask ``req``/``res`` payloads on any record before it is formatted."""

    def filter(self, record: logging.LogRecord) -> bool:
        req = getattr(record, "req", None)
        if req is not None:
            record.req = redact(req)
        res = getattr(record, "res", None)
        if res is not None:
            record.res = redact_response(res)
        return True


class ServiceContextFilter(logging.Filter):
    """Stamp every record with the tier and service name."""

    def __init__(self, env: str, service: str):
        super().__init__()
        self.env = env
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.env = self.env
        record.service = self.service
        return True


class JSONFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON objects.

    Output example::

        {"timestamp": "2026-10-19T10:30:00.123+00:00", "level": "INFO",
         "logger": "sentinel.http", "message": "request completed",
         "env": "production", "service": "nexus-sentinel",
         "event": "request.finish", "request_id": "...", "method": "GET",
         "path": "/version", "status_code": 200, "duration_ms": 1.42}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in ("env", "service"):
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """
    Human-readable formatter for terminal output during local development.

    Uses colour codes (ANSI) to highlight log levels for quick visual scanning.
    """

    COLOURS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colour = self.COLOURS.get(record.levelname, self.RESET)
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )

        request_id = getattr(record, "request_id", None)
        rid_str = f" [{request_id[:8]}]" if request_id else ""

        base = (
            f"{timestamp} | {colour}{record.levelname:<8}{self.RESET} | "
            f"{record.name}{rid_str} | {record.getMessage()}"
        )
        status_code = getattr(record, "status_code", None)
        duration_ms = getattr(record, "duration_ms", None)
        if status_code is not None and duration_ms is not None:
            base += f" -> {status_code} in {duration_ms:.2f}ms"
        if record.exc_info and record.exc_info[0] is not None:
            base += "\n" + self.formatException(record.exc_info)
        return base


def get_lifecycle_logger() -> logging.Logger:
    """Sub-logger for startup, shutdown and forced-exit events."""
    return logging.getLogger(LIFECYCLE_LOGGER)


def setup_logging(config: "ServiceConfig") -> None:
    """
    Configure the root logger with a single stdout handler.

    Safe to call again: the handler installed by a previous call is replaced,
    so a new configuration snapshot takes effect.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        if handler.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(handler)

    level = getattr(logging, config.logging.level, logging.INFO)
    root_logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.addFilter(ServiceContextFilter(config.env.value, config.service_name))
    handler.addFilter(RedactingFilter())
    handler.setFormatter(ConsoleFormatter() if config.logging.pretty else JSONFormatter())
    root_logger.addHandler(handler)

    # Lifecycle events must pass even when the configured level is ERROR
    get_lifecycle_logger().setLevel(min(level, logging.WARNING))

    # ── Suppress noisy third-party loggers ──
    # Requests are already logged by the pipeline.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(max(level, logging.INFO))

    root_logger.debug(
        "Logging initialized - level=%s, format=%s",
        logging.getLevelName(level),
        "console" if config.logging.pretty else "json",
    )
