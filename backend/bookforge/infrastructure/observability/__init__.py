"""Observability utilities (metrics, logging)."""

from .metrics import (
    JOBS_PROCESSED_TOTAL,
    JOB_DURATION,
    WORKER_PAUSED,
    PROPOSALS_GENERATED_TOTAL,
    VERSIONS_CREATED_TOTAL,
)
from .structured_logging import configure_logging, configure_structlog, get_logger

__all__ = [
    "JOBS_PROCESSED_TOTAL",
    "JOB_DURATION",
    "WORKER_PAUSED",
    "PROPOSALS_GENERATED_TOTAL",
    "VERSIONS_CREATED_TOTAL",
    "configure_logging",
    "configure_structlog",
    "get_logger",
]
