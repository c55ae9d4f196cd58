"""
Structured Logging

Features:
- JSON-formatted logs (console renderer for local development)
- Log level filtering
- Credential redaction (bearer tokens, client secrets, JWT assertions)
"""

import logging
import re
import sys
from typing import Any

import structlog

_REDACTED = "[REDACTED]"

# Keys whose values must never reach a log sink
_SECRET_KEYS = {
    "access_token",
    "authorization",
    "client_assertion",
    "client_secret",
    "private_key",
    "token",
}

_BEARER_PATTERN = re.compile(r"(Bearer|Basic)\s+[A-Za-z0-9\-._~+/=]+", re.IGNORECASE)
_JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+")


def _redact_text(value: str) -> str:
    value = _BEARER_PATTERN.sub(lambda m: f"{m.group(1)} {_REDACTED}", value)
    return _JWT_PATTERN.sub(_REDACTED, value)


def redact_secrets_processor(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Mask credentials in log events."""
    for key, value in list(event_dict.items()):
        if key.lower() in _SECRET_KEYS and value is not None:
            event_dict[key] = _REDACTED
        elif isinstance(value, str) and key not in ("level", "logger", "timestamp"):
            event_dict[key] = _redact_text(value)
    return event_dict


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure structlog for the process.

    Args:
        level: Minimum log level name
        json_output: Render JSON lines (otherwise a console renderer)
    """
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_secrets_processor,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
