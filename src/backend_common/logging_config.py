"""Logging configuration for structured key=value logging."""
from __future__ import annotations

import logging
import sys

import structlog

# Keys whose values must never be rendered (webhook secrets, computed signatures, credentials).
SENSITIVE_KEYS = frozenset(
    {
        "secret",
        "signature",
        "authorization",
        "x-webhook-signature",
        "x-internal-token",
        "internal_api_token",
    }
)
REDACTED = "[redacted]"


def _sanitize_string(value: str) -> str:
    """Escape control characters so the log entry stays on a single line."""
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def _redact_mapping(value: dict) -> dict:
    return {
        k: REDACTED if str(k).lower() in SENSITIVE_KEYS else v
        for k, v in value.items()
    }


def redact_secrets_processor(logger, method_name, event_dict):
    """Replace values of sensitive keys, including inside nested header dicts."""
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = _redact_mapping(value)
    return event_dict


def replace_newlines_processor(logger, method_name, event_dict):
    """
    Replace newlines in string values with \\n.
    Must run after format_exc_info so formatted tracebacks stay on one line too.
    """
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _sanitize_string(value)
        elif isinstance(value, (list, tuple)):
            event_dict[key] = [
                _sanitize_string(item) if isinstance(item, str) else item
                for item in value
            ]
        elif isinstance(value, dict):
            event_dict[key] = {
                k: _sanitize_string(v) if isinstance(v, str) else v
                for k, v in value.items()
            }
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """Formatter that ensures output is always on a single line."""

    def format(self, record):
        message = super().format(record)
        return message.replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: str = "INFO") -> None:
    """Configure structlog for key=value output on stdout.

    Format: timestamp=... level=info logger=webhook_service.services.scheduler event="delivery attempted" delivery_id=...
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    # aiohttp.access goes through the root handler
    aiohttp_logger = logging.getLogger("aiohttp.access")
    aiohttp_logger.setLevel(log_level)
    aiohttp_logger.propagate = True
    aiohttp_logger.handlers = []

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_secrets_processor,
            replace_newlines_processor,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
