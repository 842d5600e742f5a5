"""
Celery tasks feeding and draining the job queue.

The job table stays the source of truth: these tasks enqueue through the
orchestrator and execute through the same worker the standalone runner uses,
so Celery can be swapped for ``scripts/run_worker.py`` without losing jobs.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from bookforge.core.celery_app import celery_app
from bookforge.core.config import Settings
from bookforge.infrastructure.di import build_container
from bookforge.infrastructure.di.container import Container
from bookforge.infrastructure.event_bus import EventBus
from bookforge.infrastructure.rate_limit import InMemoryRateLimitState, RateLimitState
from bookforge.models.types import utc_now
from bookforge.services.condenser import ChapterCondenser
from bookforge.services.job_worker import JobWorker
from bookforge.services.revision_service import RevisionService
from bookforge.services.workflow_orchestrator import WorkflowOrchestrator
from bookforge.shared_kernel.exceptions import TransientProviderError

logger = logging.getLogger(__name__)


# Outlives the per-task containers, so a provider pause spans every task run in
# this worker process. The redis backend keeps its pause in redis instead.
process_rate_limit = InMemoryRateLimitState()


def _parse_id(value: str, kind: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        logger.warning("Invalid %s id provided to queue task: %s", kind, value)
        return None


def _task_container() -> Container:
    container = build_container()
    if container.resolve(Settings).RATE_LIMIT_BACKEND == "memory":
        container.register_instance(RateLimitState, process_rate_limit)
    return container


async def _with_container(work) -> Dict[str, Any]:
    # One container per task run: the engine is bound to this run's event loop
    container = _task_container()
    try:
        return await work(container)
    finally:
        rate_limit = container.resolve(RateLimitState)
        if rate_limit is not process_rate_limit:
            await rate_limit.close()
        await container.resolve(AsyncEngine).dispose()


async def _drain_job_queue(max_jobs: int) -> Dict[str, Any]:
    async def work(container: Container) -> Dict[str, Any]:
        worker = container.resolve(JobWorker)
        processed = await worker.run_until_idle(max_jobs=max_jobs)
        paused_for = await worker.rate_limit.seconds_until_reset()
        logger.info("Drained %s job(s)", processed)
        return {"processed": processed, "paused_for_seconds": round(paused_for, 1)}

    return await _with_container(work)


async def _recover_stale_jobs() -> Dict[str, Any]:
    async def work(container: Container) -> Dict[str, Any]:
        requeued = await container.resolve(JobWorker).recover_stale_jobs()
        return {"requeued": requeued}

    return await _with_container(work)


async def _queue_book_generation(book_id: str) -> Dict[str, Any]:
    book_uuid = _parse_id(book_id, "book")
    if not book_uuid:
        return {"error": "Invalid book id"}

    async def work(container: Container) -> Dict[str, Any]:
        async with container.resolve(async_sessionmaker)() as db:
            result = await WorkflowOrchestrator(db).queue_book_generation(book_uuid)
        return result.model_dump(mode="json")

    return await _with_container(work)


async def _regenerate_chapter(chapter_id: str) -> Dict[str, Any]:
    chapter_uuid = _parse_id(chapter_id, "chapter")
    if not chapter_uuid:
        return {"error": "Invalid chapter id"}

    async def work(container: Container) -> Dict[str, Any]:
        async with container.resolve(async_sessionmaker)() as db:
            workflow = await WorkflowOrchestrator(db).regenerate_chapter(chapter_uuid)
        return workflow.model_dump(mode="json")

    return await _with_container(work)


async def _generate_revision_proposals(revision_id: str) -> Dict[str, Any]:
    revision_uuid = _parse_id(revision_id, "revision")
    if not revision_uuid:
        return {"error": "Invalid revision id"}

    async def work(container: Container) -> Dict[str, Any]:
        rate_limit = container.resolve(RateLimitState)
        reset_at = await rate_limit.reset_at()
        if reset_at is not None:
            raise TransientProviderError("Provider rate limit pause in effect", reset_at=reset_at)
        async with container.resolve(async_sessionmaker)() as db:
            service = RevisionService(
                db,
                container.resolve(ChapterCondenser),
                event_bus=container.resolve(EventBus),
            )
            try:
                proposals = await service.generate_pending_proposals(revision_uuid)
            except TransientProviderError as exc:
                if exc.reset_at is not None:
                    await rate_limit.pause_until(exc.reset_at)
                raise
        return {
            "generated": len(proposals),
            "statuses": [proposal.status.value for proposal in proposals],
        }

    return await _with_container(work)


@celery_app.task(name="drain_job_queue")
def drain_job_queue(max_jobs: Optional[int] = None) -> Dict[str, Any]:
    from bookforge.core.config import settings

    return asyncio.run(_drain_job_queue(max_jobs or settings.JOB_DRAIN_MAX_JOBS))


@celery_app.task(name="recover_stale_jobs")
def recover_stale_jobs() -> Dict[str, Any]:
    return asyncio.run(_recover_stale_jobs())


@celery_app.task(name="queue_book_generation")
def queue_book_generation(book_id: str) -> Dict[str, Any]:
    return asyncio.run(_queue_book_generation(book_id))


@celery_app.task(name="regenerate_chapter")
def regenerate_chapter(chapter_id: str) -> Dict[str, Any]:
    return asyncio.run(_regenerate_chapter(chapter_id))


@celery_app.task(bind=True, name="generate_revision_proposals", max_retries=5)
def generate_revision_proposals(self, revision_id: str) -> Dict[str, Any]:
    try:
        return asyncio.run(_generate_revision_proposals(revision_id))
    except TransientProviderError as exc:
        # Proposals already generated are kept; the rest resume after the reset
        countdown = 60
        if exc.reset_at is not None:
            countdown = max(1, int((exc.reset_at - utc_now()).total_seconds()))
        raise self.retry(exc=exc, countdown=countdown)
