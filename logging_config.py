"""Centralized logging configuration.

This module provides:
- PlainFormatter for local stderr output
- JSONFormatter for structured, one-object-per-line output
- log_security_event() for abuse-relevant events (CSRF failures, PKCE
  failures, rate limiting, ...)
"""

import json
import logging
import re
import sys

SECURITY_FIELDS = ("event_type", "ip", "detail", "severity")

security_logger = logging.getLogger("security")


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(self, service: str = "vin-mcp"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        # Extract tag from message if present: [TAG] message
        tag = None
        message = record.getMessage()
        tag_match = re.match(r'\[([A-Z_]+)\]\s*(.*)', message, re.DOTALL)
        if tag_match:
            tag = tag_match.group(1)
            message = tag_match.group(2)

        log_entry = {
            "service": self.service,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "tag": tag,
            "message": message,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in SECURITY_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class PlainFormatter(logging.Formatter):
    """Plain text formatter for stderr output (local debugging)."""

    def __init__(self):
        super().__init__(
            fmt='%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )


def setup_logging(level: str = "INFO", fmt: str = "plain") -> logging.Logger:
    """Configure the root logger.

    Args:
        level: Log level name for the root logger.
        fmt: "plain" for human-readable lines, "json" for structured output.

    Returns:
        Configured root logger.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(level)
    stderr_handler.setFormatter(JSONFormatter() if fmt == "json" else PlainFormatter())
    root_logger.addHandler(stderr_handler)

    # Suppress noisy HTTP client logs (the report producer uses httpx)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger(__name__).info(f"[STARTUP] Logging configured (level={level}, format={fmt})")
    return root_logger


def log_security_event(event_type: str, ip: str = None, detail: str = "", severity: str = "warn") -> None:
    """Record a security-relevant event on the ``security`` logger."""
    security_logger.warning(
        f"[SECURITY] {event_type} ip={ip or '-'} severity={severity} {detail}".rstrip(),
        extra={"event_type": event_type, "ip": ip, "detail": detail, "severity": severity},
    )


def redact(secret: str, keep: int = 6) -> str:
    """Shorten a credential for log output."""
    if not secret:
        return "<none>"
    return f"{secret[:keep]}..."
