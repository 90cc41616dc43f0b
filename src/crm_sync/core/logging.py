"""Structured logging configuration.

Uses structlog for structured JSON logging in production and
human-readable console output everywhere else. Events below LOG_LEVEL are
dropped before rendering, and credential-bearing keys are redacted so
tokens and Authorization headers never reach the log stream.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

from src.crm_sync.config import Environment, Settings, get_settings

REDACTED = "[redacted]"

SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "access_token",
        "refresh_token",
        "client_secret",
        "password",
    }
)


def mask_token(token: str | None) -> str:
    """Shorten a secret token for log output (first 8 chars + ellipsis)."""
    if not token:
        return ""
    return f"{token[:8]}..."


def redact_sensitive(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace credential values in an event dict, including nested headers."""
    for key, value in list(event_dict.items()):
        if key.lower() in SENSITIVE_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, dict):
            event_dict[key] = {
                k: REDACTED if str(k).lower() in SENSITIVE_KEYS and v else v
                for k, v in value.items()
            }
    return event_dict


def configure_structlog(settings: Settings | None = None) -> None:
    """Configure structlog processors based on environment and LOG_LEVEL."""
    settings = settings or get_settings()
    level = logging.getLevelName(settings.LOG_LEVEL.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", level=level)
    logging.getLogger().setLevel(level)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=not settings.is_test,
    )
