"""Structured logging configuration.

Configures ``structlog`` on import and exposes a shared ``logger``. Event
names are snake_case strings; context goes in keyword arguments.
"""

import logging
import sys

import structlog
from structlog.types import EventDict

from app.core.config import settings


def add_app_context(logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Attach service-wide context to every log event."""
    event_dict["environment"] = settings.ENVIRONMENT.value
    event_dict["service"] = "skill-installer"
    return event_dict


def setup_logging() -> None:
    """Configure stdlib logging and structlog."""
    level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    if settings.LOG_FORMAT == "json" or settings.is_production:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            add_app_context,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


setup_logging()

logger = structlog.get_logger("skill_installer")
