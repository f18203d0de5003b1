"""Structured logging configuration with structlog."""

import logging
import sys
from typing import Any

import orjson
import structlog
from structlog.types import EventDict, Processor

from authflow.core.config import settings

MASKED_FIELDS = ("email", "identifier")
REDACTED_FIELDS = ("password", "new_password", "code")


def mask_email(email: str | None) -> str:
    """Mask an email address for logs, keeping the first three characters and the domain."""
    if not email:
        return "none"
    local, _, domain = email.partition("@")
    return f"{local[:3]}***@{domain}"


def _orjson_dumps(obj: Any, **kwargs: Any) -> str:
    return orjson.dumps(obj, default=kwargs.get("default")).decode()


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to log events."""
    event_dict["app_name"] = settings.APP_NAME
    event_dict["environment"] = settings.APP_ENV
    return event_dict


def scrub_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask identifiers and drop secrets before anything is rendered."""
    for key in MASKED_FIELDS:
        if key in event_dict and isinstance(event_dict[key], str):
            event_dict[key] = mask_email(event_dict[key])
    for key in REDACTED_FIELDS:
        if key in event_dict:
            event_dict[key] = "[redacted]"
    return event_dict


def configure_logging() -> None:
    """
    Configure structlog for structured logging.

    Human-readable console output in development, JSON elsewhere. Emails are
    masked and codes or passwords redacted in both.
    """
    is_dev = settings.is_development
    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    shared_processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        add_app_context,
        scrub_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if is_dev:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        ]
    else:
        processors = shared_processors + [
            structlog.processors.JSONRenderer(serializer=_orjson_dumps)
        ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
        context_class=dict,
    )

    logging.getLogger().setLevel(level)


def get_logger(name: str | None = None) -> Any:
    """
    Get a structlog logger instance.

    Example:
        ```python
        logger = get_logger(__name__)
        logger.info("otp_requested", email=email, purpose=purpose)
        ```
    """
    return structlog.get_logger(name)
