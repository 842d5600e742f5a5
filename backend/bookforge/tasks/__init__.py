"""
Celery tasks module
"""
from bookforge.core.celery_app import celery_app
from bookforge.tasks import queue_tasks

__all__ = ["celery_app", "queue_tasks"]
