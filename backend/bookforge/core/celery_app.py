"""Celery application configuration"""
from celery import Celery
from kombu import Queue

from bookforge.core.config import settings

# Create Celery instance
celery_app = Celery(
    "bookforge",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["bookforge.tasks.queue_tasks"],
)

# Configure Celery
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes
    task_soft_time_limit=25 * 60,  # 25 minutes
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
)

celery_app.conf.task_queues = (
    # Job draining and revision proposals
    Queue("generation_medium", routing_key="generation.#"),
    # Queue feeding and stale job recovery
    Queue("maintenance_low", routing_key="maintenance.#"),
    Queue("celery", routing_key="celery"),
)

celery_app.conf.task_default_queue = "celery"
celery_app.conf.task_default_exchange = "tasks"
celery_app.conf.task_default_routing_key = "celery"

celery_app.conf.task_routes = {
    "drain_job_queue": {"queue": "generation_medium"},
    "generate_revision_proposals": {"queue": "generation_medium"},
    "queue_book_generation": {"queue": "maintenance_low"},
    "regenerate_chapter": {"queue": "maintenance_low"},
    "recover_stale_jobs": {"queue": "maintenance_low"},
}

# The job table is the durable queue; beat only nudges workers to drain it
celery_app.conf.beat_schedule = {
    "drain-job-queue": {
        "task": "drain_job_queue",
        "schedule": 30.0,
    },
    "recover-stale-jobs": {
        "task": "recover_stale_jobs",
        "schedule": 15 * 60.0,
    },
}


# Worker command examples:
#   celery -A bookforge.core.celery_app worker -Q generation_medium --concurrency=2 -n gen@%h
#   celery -A bookforge.core.celery_app worker -Q maintenance_low --concurrency=1 -n maint@%h
#   celery -A bookforge.core.celery_app beat
# The memory rate-limit pause is per worker process; use RATE_LIMIT_BACKEND=redis
# when more than one process drains the queue.
