"""
Book completion detection.

A book is complete once it has current chapters and every one of them has
content. The first time that holds, a completion record is written and one
analysis job is queued; later chapter writes never repeat either step.
"""
from __future__ import annotations

from datetime import datetime
import logging
from typing import Callable, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookforge.infrastructure.event_bus import EventBus
from bookforge.models.chapter import Chapter
from bookforge.models.completion import AnalyticsStatus, BookCompletion
from bookforge.models.job import JobType
from bookforge.models.project import Book
from bookforge.models.types import utc_now
from bookforge.schemas.completion import (
    AnalysisTriggerResult,
    BookCompletionStatus,
    BookCompletionSummary,
    CompletionCheckResult,
    ManuscriptAnalytics,
)
from bookforge.services.chapter_scope import current_chapters
from bookforge.services.job_store import JobStore
from bookforge.shared_kernel.domain_events import BookCompletedEvent, JobFailedEvent
from bookforge.shared_kernel.exceptions import EntityNotFoundError, FatalPreconditionError

logger = logging.getLogger(__name__)


class CompletionDetector:
    def __init__(
        self,
        db: AsyncSession,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.event_bus = event_bus
        self._clock = clock

    async def get_completion_record(self, book_id: UUID) -> Optional[BookCompletion]:
        return await self.db.scalar(
            select(BookCompletion)
            .where(BookCompletion.book_id == book_id)
            .execution_options(populate_existing=True)
        )

    async def get_project_completions(self, project_id: UUID) -> List[BookCompletion]:
        result = await self.db.scalars(
            select(BookCompletion)
            .where(BookCompletion.project_id == project_id)
            .order_by(BookCompletion.completed_at)
        )
        return list(result.all())

    async def check_book_completion(self, book_id: UUID) -> BookCompletionStatus:
        book = await self.db.get(Book, book_id)
        if book is None:
            raise EntityNotFoundError(f"Book {book_id} not found", details={"book_id": str(book_id)})
        chapters = await current_chapters(self.db, book_id)
        written = [chapter for chapter in chapters if chapter.content and chapter.content.strip()]
        record = await self.get_completion_record(book_id)
        return BookCompletionStatus(
            book_id=book_id,
            is_complete=bool(chapters) and len(written) == len(chapters),
            total_chapters=len(chapters),
            completed_chapters=len(written),
            total_word_count=sum(chapter.word_count for chapter in written),
            completed_at=record.completed_at if record else None,
            analytics_status=record.analytics_status.value if record else None,
        )

    async def mark_book_complete(self, book_id: UUID) -> BookCompletion:
        """Create the completion record, or return the existing one unchanged."""
        record, _ = await self._mark_complete(book_id)
        return record

    async def _mark_complete(self, book_id: UUID) -> Tuple[BookCompletion, bool]:
        existing = await self.get_completion_record(book_id)
        if existing is not None:
            return existing, False

        status = await self.check_book_completion(book_id)
        if not status.is_complete:
            raise FatalPreconditionError(
                "Book is not complete",
                details={
                    "book_id": str(book_id),
                    "total_chapters": status.total_chapters,
                    "completed_chapters": status.completed_chapters,
                },
            )
        book = await self.db.get(Book, book_id)
        now = self._clock()
        record = BookCompletion(
            book_id=book_id,
            project_id=book.project_id,
            completed_at=now,
            total_chapters=status.total_chapters,
            total_word_count=status.total_word_count,
            analytics_status=AnalyticsStatus.PENDING,
        )
        self.db.add(record)
        try:
            await self.db.flush()
            await self.db.execute(
                update(Book)
                .where(Book.id == book_id)
                .values(is_complete=True, completed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_completion_record(book_id)
            if existing is None:
                raise
            logger.info("Book %s was marked complete by a concurrent writer", book_id)
            return existing, False
        logger.info(
            "Book %s complete: %d chapters, %d words",
            book_id,
            record.total_chapters,
            record.total_word_count,
        )
        return record, True

    async def trigger_auto_analysis(self, book_id: UUID) -> AnalysisTriggerResult:
        record = await self.get_completion_record(book_id)
        if record is None:
            return AnalysisTriggerResult(success=False, message="Book has not been marked complete")
        if record.analytics_status == AnalyticsStatus.PROCESSING:
            return AnalysisTriggerResult(success=False, message="Analysis already in progress")
        if record.analytics_status == AnalyticsStatus.COMPLETED:
            return AnalysisTriggerResult(success=False, message="Analysis already completed; use reanalyse")

        try:
            result = await self.db.execute(
                update(BookCompletion)
                .where(
                    BookCompletion.book_id == book_id,
                    BookCompletion.analytics_status.in_([AnalyticsStatus.PENDING, AnalyticsStatus.FAILED]),
                )
                .values(analytics_status=AnalyticsStatus.PROCESSING, analytics_triggered_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                return AnalysisTriggerResult(success=False, message="Analysis already in progress")
            job_id = await JobStore(self.db, self._clock).create_job(JobType.ANALYZE_BOOK, book_id, commit=False)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Failed to queue analysis for book %s: %s", book_id, exc)
            await self._set_analytics_status(book_id, AnalyticsStatus.FAILED)
            return AnalysisTriggerResult(success=False, message=f"Failed to queue analysis: {exc}")

        logger.info("Queued analysis job %s for book %s", job_id, book_id)
        return AnalysisTriggerResult(success=True, message="Analysis queued", job_id=job_id)

    async def reanalyse(self, book_id: UUID) -> AnalysisTriggerResult:
        """Reset analytics and queue a fresh analysis."""
        record = await self.get_completion_record(book_id)
        if record is None:
            raise EntityNotFoundError(
                f"No completion record for book {book_id}",
                details={"book_id": str(book_id)},
            )
        if record.analytics_status == AnalyticsStatus.PROCESSING:
            return AnalysisTriggerResult(success=False, message="Analysis already in progress")
        await self.db.execute(
            update(BookCompletion)
            .where(BookCompletion.book_id == book_id)
            .values(
                analytics_status=AnalyticsStatus.PENDING,
                cached_analytics=None,
                analytics_completed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return await self.trigger_auto_analysis(book_id)

    async def cache_analytics_results(self, book_id: UUID, analytics: ManuscriptAnalytics) -> BookCompletion:
        result = await self.db.execute(
            update(BookCompletion)
            .where(BookCompletion.book_id == book_id)
            .values(
                analytics_status=AnalyticsStatus.COMPLETED,
                cached_analytics=analytics,
                analytics_completed_at=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise EntityNotFoundError(
                f"No completion record for book {book_id}",
                details={"book_id": str(book_id)},
            )
        await self.db.commit()
        return await self.get_completion_record(book_id)

    async def mark_analytics_failed(self, book_id: UUID) -> None:
        await self._set_analytics_status(book_id, AnalyticsStatus.FAILED)
        logger.warning("Analytics for book %s marked failed", book_id)

    async def check_and_trigger_completion(self, chapter_id: UUID) -> CompletionCheckResult:
        """Run after every chapter content write. Acts only on the first transition to complete."""
        book_id = await self.db.scalar(select(Chapter.book_id).where(Chapter.id == chapter_id))
        if book_id is None:
            raise EntityNotFoundError(f"Chapter {chapter_id} not found", details={"chapter_id": str(chapter_id)})

        if await self.get_completion_record(book_id) is not None:
            return CompletionCheckResult(is_now_complete=False)
        status = await self.check_book_completion(book_id)
        if not status.is_complete:
            return CompletionCheckResult(is_now_complete=False)

        record, created = await self._mark_complete(book_id)
        if not created:
            return CompletionCheckResult(is_now_complete=False)

        trigger = await self.trigger_auto_analysis(book_id)
        if self.event_bus is not None:
            await self.event_bus.publish(
                BookCompletedEvent(
                    book_id=book_id,
                    project_id=record.project_id,
                    total_chapters=record.total_chapters,
                    total_word_count=record.total_word_count,
                )
            )
        record = await self.get_completion_record(book_id)
        return CompletionCheckResult(
            is_now_complete=True,
            completion_record=BookCompletionSummary.model_validate(record),
            analysis_triggered=trigger.success,
        )

    async def _set_analytics_status(self, book_id: UUID, status: AnalyticsStatus) -> None:
        await self.db.execute(
            update(BookCompletion)
            .where(BookCompletion.book_id == book_id)
            .values(analytics_status=status)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()


def analytics_failure_subscriber(session_factory: async_sessionmaker[AsyncSession]):
    """Event handler marking analytics failed when an analyze_book job fails for good."""

    async def on_job_failed(event: JobFailedEvent) -> None:
        if event.job_type != JobType.ANALYZE_BOOK.value:
            return
        async with session_factory() as session:
            await CompletionDetector(session).mark_analytics_failed(event.target_id)

    return on_job_failed
