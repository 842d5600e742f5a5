"""
Book versioning service.

A book holds an ordered set of versions, each owning its own chapter rows.
Exactly one version is active once any exists. Every operation that touches
the active flag or allocates a version number first bumps the book row, which
serialises writers for that book (row lock on PostgreSQL, write lock on SQLite).
"""
from __future__ import annotations

import copy
from datetime import datetime
import logging
from typing import Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from bookforge.infrastructure.event_bus import EventBus
from bookforge.infrastructure.observability.metrics import VERSIONS_CREATED_TOTAL
from bookforge.models.book_version import BookVersion
from bookforge.models.chapter import Chapter, ChapterEdit
from bookforge.models.project import Book, Project
from bookforge.models.types import utc_now
from bookforge.schemas.versioning import (
    CreateVersionOptions,
    OutlineSnapshot,
    PlotSnapshot,
    VersioningRequirement,
    VersionSummary,
)
from bookforge.services.chapter_scope import active_version_id, chapters_in_version
from bookforge.shared_kernel.domain_events import VersionCreatedEvent
from bookforge.shared_kernel.exceptions import (
    EntityNotFoundError,
    InvalidStateTransitionError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def default_version_name(version_number: int, auto_created: bool) -> str:
    name = f"Version {version_number}"
    return f"{name} (Auto)" if auto_created else name


class BookVersioningService:
    """Service for book versions"""

    def __init__(
        self,
        db: AsyncSession,
        event_bus: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.event_bus = event_bus
        self._clock = clock

    # ------------------------------------------------------------------ reads

    async def get_version(self, version_id: UUID) -> BookVersion:
        version = await self.db.get(BookVersion, version_id, populate_existing=True)
        if version is None:
            raise EntityNotFoundError(f"Version {version_id} not found", details={"version_id": str(version_id)})
        return version

    async def get_active_version(self, book_id: UUID) -> Optional[BookVersion]:
        return await self.db.scalar(
            select(BookVersion)
            .where(BookVersion.book_id == book_id, BookVersion.is_active.is_(True))
            .execution_options(populate_existing=True)
        )

    async def get_versions(self, book_id: UUID) -> List[VersionSummary]:
        """All versions of a book, newest first, with live chapter counts."""
        versions = (
            await self.db.scalars(
                select(BookVersion)
                .where(BookVersion.book_id == book_id)
                .order_by(BookVersion.version_number.desc())
                .execution_options(populate_existing=True)
            )
        ).all()
        live_rows = await self.db.execute(
            select(Chapter.version_id, func.count(Chapter.id), func.coalesce(func.sum(Chapter.word_count), 0))
            .where(Chapter.book_id == book_id, Chapter.version_id.is_not(None))
            .group_by(Chapter.version_id)
        )
        live: Dict[UUID, tuple] = {row[0]: (row[1], row[2]) for row in live_rows.all()}
        summaries = []
        for version in versions:
            chapters, words = live.get(version.id, (0, 0))
            summary = VersionSummary.model_validate(version)
            summaries.append(summary.model_copy(update={"actual_chapter_count": chapters, "actual_word_count": words}))
        return summaries

    async def get_chapters_for_version(self, version_id: UUID) -> List[Chapter]:
        version = await self.get_version(version_id)
        result = await self.db.scalars(chapters_in_version(version.book_id, version.id))
        return list(result.all())

    async def requires_versioning(self, book_id: UUID) -> VersioningRequirement:
        """Whether the book's current chapters already hold content."""
        version_id = await active_version_id(self.db, book_id)
        stmt = select(func.count(Chapter.id), func.coalesce(func.sum(Chapter.word_count), 0)).where(
            Chapter.book_id == book_id,
            Chapter.content.is_not(None),
            Chapter.content != "",
        )
        if version_id is None:
            stmt = stmt.where(Chapter.version_id.is_(None))
        else:
            stmt = stmt.where(Chapter.version_id == version_id)
        count, words = (await self.db.execute(stmt)).one()
        return VersioningRequirement(
            required=count > 0,
            existing_chapter_count=count,
            existing_word_count=words,
            active_version_id=version_id,
        )

    # ------------------------------------------------------- transaction parts

    async def claim_book(self, book_id: UUID) -> Book:
        """Take the per-book write lock for the current transaction."""
        result = await self.db.execute(
            update(Book)
            .where(Book.id == book_id)
            .values(updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise EntityNotFoundError(f"Book {book_id} not found", details={"book_id": str(book_id)})
        return await self.db.get(Book, book_id, populate_existing=True)

    async def allocate_version(
        self,
        book_id: UUID,
        name: Optional[str] = None,
        auto_created: bool = False,
    ) -> BookVersion:
        """Insert the next version as the active one. Does not commit."""
        book = await self.claim_book(book_id)
        next_number = await self._next_version_number(book_id)
        await self._deactivate_all(book_id)
        plot_snapshot, outline_snapshot = await self._snapshots(book)
        version = BookVersion(
            book_id=book_id,
            version_number=next_number,
            version_name=name or default_version_name(next_number, auto_created),
            plot_snapshot=plot_snapshot,
            outline_snapshot=outline_snapshot,
            is_active=True,
            word_count=0,
            chapter_count=0,
            created_at=self._clock(),
        )
        self.db.add(version)
        await self.db.flush()
        logger.info("Allocated version %s (#%d) for book %s", version.id, next_number, book_id)
        return version

    async def clone_chapters(
        self,
        book_id: UUID,
        source_version_id: Optional[UUID],
        target_version_id: UUID,
    ) -> int:
        """Copy every chapter of the source (legacy chapters when None) into the target. Does not commit."""
        source = (await self.db.scalars(chapters_in_version(book_id, source_version_id))).all()
        for chapter in source:
            self.db.add(
                Chapter(
                    book_id=book_id,
                    version_id=target_version_id,
                    chapter_number=chapter.chapter_number,
                    title=chapter.title,
                    scene_cards=copy.deepcopy(chapter.scene_cards),
                    content=chapter.content,
                    summary=chapter.summary,
                    status=chapter.status,
                    word_count=chapter.word_count,
                )
            )
        await self.db.flush()
        logger.info(
            "Cloned %d chapter(s) from %s into version %s",
            len(source),
            source_version_id or "legacy chapters",
            target_version_id,
        )
        return len(source)

    async def update_version_stats(self, version_id: UUID, *, commit: bool = True) -> BookVersion:
        """Recompute chapter_count and word_count from the version's chapter rows."""
        count, words = (
            await self.db.execute(
                select(func.count(Chapter.id), func.coalesce(func.sum(Chapter.word_count), 0)).where(
                    Chapter.version_id == version_id
                )
            )
        ).one()
        result = await self.db.execute(
            update(BookVersion)
            .where(BookVersion.id == version_id)
            .values(chapter_count=count, word_count=words, completed_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise EntityNotFoundError(f"Version {version_id} not found", details={"version_id": str(version_id)})
        if commit:
            await self.db.commit()
        return await self.get_version(version_id)

    # -------------------------------------------------------------- operations

    async def create_version(
        self,
        book_id: UUID,
        options: Optional[CreateVersionOptions] = None,
    ) -> BookVersion:
        """Create a new active version in one transaction, optionally cloning chapters into it."""
        options = options or CreateVersionOptions()
        try:
            version = await self.allocate_version(book_id, options.name, options.auto_created)
            if options.clone_from_version_id is not None:
                source = await self.get_version(options.clone_from_version_id)
                if source.book_id != book_id:
                    raise EntityNotFoundError(
                        f"Version {source.id} not found for book {book_id}",
                        details={"version_id": str(source.id), "book_id": str(book_id)},
                    )
                await self.clone_chapters(book_id, source.id, version.id)
                await self.update_version_stats(version.id, commit=False)
            elif options.clone_legacy:
                await self.clone_chapters(book_id, None, version.id)
                await self.update_version_stats(version.id, commit=False)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        VERSIONS_CREATED_TOTAL.labels(auto_created=str(options.auto_created).lower()).inc()
        version = await self.get_version(version.id)
        if self.event_bus is not None:
            await self.event_bus.publish(
                VersionCreatedEvent(
                    book_id=book_id,
                    version_id=version.id,
                    version_number=version.version_number,
                    auto_created=options.auto_created,
                )
            )
        return version

    async def activate_version(self, book_id: UUID, version_id: UUID) -> BookVersion:
        try:
            await self.claim_book(book_id)
            version = await self._get_book_version(book_id, version_id)
            await self._deactivate_all(book_id)
            await self._set_active(version.id, True)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("Activated version %s for book %s", version_id, book_id)
        return await self.get_version(version_id)

    async def delete_version(self, book_id: UUID, version_id: UUID, force: bool = False) -> None:
        """Delete a version with its chapters and edit history.

        The only version of a book is never deleted. The active version needs
        ``force``; the highest-numbered remaining version then becomes active.
        """
        try:
            await self.claim_book(book_id)
            version = await self._get_book_version(book_id, version_id)
            total = await self.db.scalar(select(func.count(BookVersion.id)).where(BookVersion.book_id == book_id))
            if total <= 1:
                raise ValidationError(
                    "Cannot delete the only version of a book",
                    details={"book_id": str(book_id), "version_id": str(version_id)},
                )
            if version.is_active:
                if not force:
                    raise InvalidStateTransitionError(
                        "Cannot delete the active version. Switch to another version first, or use force=True",
                        details={"book_id": str(book_id), "version_id": str(version_id)},
                    )
                replacement_id = await self.db.scalar(
                    select(BookVersion.id)
                    .where(BookVersion.book_id == book_id, BookVersion.id != version_id)
                    .order_by(BookVersion.version_number.desc())
                    .limit(1)
                )
                await self._set_active(version_id, False)
                await self._set_active(replacement_id, True)
                logger.info("Reassigned active version of book %s to %s", book_id, replacement_id)

            chapter_ids = select(Chapter.id).where(Chapter.version_id == version_id)
            await self.db.execute(
                delete(ChapterEdit)
                .where((ChapterEdit.version_id == version_id) | ChapterEdit.chapter_id.in_(chapter_ids))
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(Chapter).where(Chapter.version_id == version_id).execution_options(synchronize_session=False)
            )
            await self.db.execute(
                delete(BookVersion).where(BookVersion.id == version_id).execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("Deleted version %s of book %s", version_id, book_id)

    async def migrate_existing_chapters(self, book_id: UUID) -> Optional[BookVersion]:
        """Move un-versioned legacy chapters into an "Original" version.

        Returns None when there is nothing to migrate. The new version only
        becomes active when the book has no active version yet.
        """
        try:
            book = await self.claim_book(book_id)
            legacy_count = await self.db.scalar(
                select(func.count(Chapter.id)).where(Chapter.book_id == book_id, Chapter.version_id.is_(None))
            )
            if not legacy_count:
                await self.db.rollback()
                return None

            has_active = await active_version_id(self.db, book_id) is not None
            plot_snapshot, outline_snapshot = await self._snapshots(book)
            version = BookVersion(
                book_id=book_id,
                version_number=await self._next_version_number(book_id),
                version_name="Original",
                plot_snapshot=plot_snapshot,
                outline_snapshot=outline_snapshot,
                is_active=not has_active,
                word_count=0,
                chapter_count=0,
                created_at=self._clock(),
            )
            self.db.add(version)
            await self.db.flush()

            legacy_ids = select(Chapter.id).where(Chapter.book_id == book_id, Chapter.version_id.is_(None))
            await self.db.execute(
                update(ChapterEdit)
                .where(ChapterEdit.version_id.is_(None), ChapterEdit.chapter_id.in_(legacy_ids))
                .values(version_id=version.id)
                .execution_options(synchronize_session=False)
            )
            await self.db.execute(
                update(Chapter)
                .where(Chapter.book_id == book_id, Chapter.version_id.is_(None))
                .values(version_id=version.id)
                .execution_options(synchronize_session=False)
            )
            version = await self.update_version_stats(version.id, commit=False)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        logger.info("Migrated %d legacy chapter(s) of book %s into version %s", legacy_count, book_id, version.id)
        return version

    # ---------------------------------------------------------------- helpers

    async def _get_book_version(self, book_id: UUID, version_id: UUID) -> BookVersion:
        version = await self.db.get(BookVersion, version_id, populate_existing=True)
        if version is None or version.book_id != book_id:
            raise EntityNotFoundError(
                f"Version {version_id} not found for book {book_id}",
                details={"version_id": str(version_id), "book_id": str(book_id)},
            )
        return version

    async def _next_version_number(self, book_id: UUID) -> int:
        current = await self.db.scalar(
            select(func.coalesce(func.max(BookVersion.version_number), 0)).where(BookVersion.book_id == book_id)
        )
        return int(current) + 1

    async def _deactivate_all(self, book_id: UUID) -> None:
        await self.db.execute(
            update(BookVersion)
            .where(BookVersion.book_id == book_id, BookVersion.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )

    async def _set_active(self, version_id: UUID, active: bool) -> None:
        await self.db.execute(
            update(BookVersion)
            .where(BookVersion.id == version_id)
            .values(is_active=active)
            .execution_options(synchronize_session=False)
        )

    async def _snapshots(self, book: Book) -> tuple[PlotSnapshot, OutlineSnapshot]:
        project = await self.db.get(Project, book.project_id)
        now = self._clock()
        plot = PlotSnapshot(
            captured_at=now,
            structure=copy.deepcopy(project.plot_structure) if project is not None else None,
        )
        outline = OutlineSnapshot(captured_at=now, outline=copy.deepcopy(book.outline))
        return plot, outline
