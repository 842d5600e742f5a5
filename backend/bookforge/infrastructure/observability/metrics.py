"""Prometheus metrics definitions."""
from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge


JOBS_PROCESSED_TOTAL = Counter(
    "bookforge_jobs_processed_total",
    "Background jobs processed by outcome",
    ["job_type", "outcome"],
)

JOB_DURATION = Histogram(
    "bookforge_job_duration_seconds",
    "Background job handler duration",
    ["job_type"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600],
)

WORKER_PAUSED = Gauge(
    "bookforge_worker_paused",
    "1 while job pickups are paused for a provider rate limit",
)

PROPOSALS_GENERATED_TOTAL = Counter(
    "bookforge_revision_proposals_total",
    "Condensation proposals generated by outcome",
    ["outcome"],
)

VERSIONS_CREATED_TOTAL = Counter(
    "bookforge_book_versions_created_total",
    "Book versions created",
    ["auto_created"],
)
