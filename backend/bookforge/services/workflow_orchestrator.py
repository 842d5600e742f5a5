"""Chapter generation workflows built on the job queue."""
from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from bookforge.models.chapter import Chapter, ChapterStatus
from bookforge.models.job import JobType
from bookforge.models.project import Book
from bookforge.models.types import utc_now
from bookforge.schemas.jobs import BookGenerationResult, ChapterWorkflowStatus, JobSummary, WorkflowJobs
from bookforge.services.chapter_scope import current_chapters
from bookforge.services.job_store import JobStore
from bookforge.shared_kernel.exceptions import EntityNotFoundError

logger = logging.getLogger(__name__)

# Order matters: jobs for one chapter run strictly in creation order
CHAPTER_WORKFLOW: Sequence[JobType] = (
    JobType.GENERATE_CHAPTER,
    JobType.GENERATE_SUMMARY,
    JobType.UPDATE_STATES,
)


class WorkflowOrchestrator:
    """Enqueues the fixed job chain for chapters and books."""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self._clock = clock
        self.jobs = JobStore(db, clock)

    async def queue_chapter_workflow(self, chapter_id: UUID) -> WorkflowJobs:
        try:
            await self._get_chapter(chapter_id)
            workflow = await self._enqueue_workflow(chapter_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("Queued workflow for chapter %s: jobs %s", chapter_id, workflow.job_ids)
        return workflow

    async def queue_book_generation(self, book_id: UUID) -> BookGenerationResult:
        """Queue the workflow for every pending chapter of the book, in chapter order."""
        try:
            book = await self.db.get(Book, book_id)
            if book is None:
                raise EntityNotFoundError(f"Book {book_id} not found", details={"book_id": str(book_id)})
            pending = [c for c in await current_chapters(self.db, book_id) if c.status == ChapterStatus.PENDING]
            for chapter in pending:
                await self._enqueue_workflow(chapter.id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        result = BookGenerationResult(
            book_id=book_id,
            chapters_queued=len(pending),
            jobs_created=len(pending) * len(CHAPTER_WORKFLOW),
        )
        logger.info(
            "Queued generation for book %s: %d chapter(s), %d job(s)",
            book_id,
            result.chapters_queued,
            result.jobs_created,
        )
        return result

    async def regenerate_chapter(self, chapter_id: UUID) -> WorkflowJobs:
        """Clear the chapter back to pending and queue a fresh workflow.

        Earlier jobs for the chapter stay in the table as history.
        """
        try:
            await self._get_chapter(chapter_id)
            await self.db.execute(
                update(Chapter)
                .where(Chapter.id == chapter_id)
                .values(
                    content=None,
                    summary=None,
                    word_count=0,
                    status=ChapterStatus.PENDING,
                    updated_at=self._clock(),
                )
                .execution_options(synchronize_session=False)
            )
            workflow = await self._enqueue_workflow(chapter_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("Chapter %s reset for regeneration: jobs %s", chapter_id, workflow.job_ids)
        return workflow

    async def get_chapter_workflow_status(self, chapter_id: UUID) -> ChapterWorkflowStatus:
        chapter = await self._get_chapter(chapter_id)
        jobs = await self.jobs.get_jobs_for_target(chapter_id)
        return ChapterWorkflowStatus(
            chapter_id=chapter_id,
            chapter_status=chapter.status.value,
            word_count=chapter.word_count,
            jobs=[JobSummary.model_validate(job) for job in jobs],
        )

    async def _enqueue_workflow(self, chapter_id: UUID) -> WorkflowJobs:
        job_ids = {}
        for job_type in CHAPTER_WORKFLOW:
            job_ids[job_type.value] = await self.jobs.create_job(job_type, chapter_id, commit=False)
        return WorkflowJobs(chapter_id=chapter_id, **job_ids)

    async def _get_chapter(self, chapter_id: UUID) -> Chapter:
        chapter = await self.db.get(Chapter, chapter_id, populate_existing=True)
        if chapter is None:
            raise EntityNotFoundError(f"Chapter {chapter_id} not found", details={"chapter_id": str(chapter_id)})
        return chapter
