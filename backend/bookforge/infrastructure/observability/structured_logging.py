"""Logging configuration helpers."""
from __future__ import annotations

import logging
import sys
from typing import Optional

import structlog

from bookforge.core.config import Settings


def configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.getLogger(__name__).info("structlog configured")


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure stdlib logging for a worker or script process, plus structlog when enabled."""
    if settings is None:
        from bookforge.core.config import settings as default_settings

        settings = default_settings
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if settings.STRUCTURED_LOGGING_ENABLED:
        configure_structlog()


def get_logger(name: str, **initial_values) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name).bind(**initial_values)
