"""Per-chapter quality signals that steer where revisions cut."""
from __future__ import annotations

import logging
from typing import Optional, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from bookforge.models import Book, EditorialReport
from bookforge.schemas.quality import QualityFindings

logger = logging.getLogger(__name__)


class QualitySignalProvider(Protocol):
    async def chapter_issues(self, db: AsyncSession, book_id: UUID) -> tuple[Optional[UUID], QualityFindings]:
        """Return (report id, findings) for the book; report id is None without a report."""
        ...


class EditorialQualitySignals:
    """Reads the latest completed editorial report of the book's project."""

    async def chapter_issues(self, db: AsyncSession, book_id: UUID) -> tuple[Optional[UUID], QualityFindings]:
        project_id = await db.scalar(select(Book.project_id).where(Book.id == book_id))
        if project_id is None:
            return None, QualityFindings()
        report = await db.scalar(
            select(EditorialReport)
            .where(
                EditorialReport.project_id == project_id,
                EditorialReport.status == "completed",
                (EditorialReport.book_id == book_id) | (EditorialReport.book_id.is_(None)),
            )
            .order_by(EditorialReport.completed_at.desc().nulls_last(), EditorialReport.created_at.desc())
            .limit(1)
        )
        if report is None:
            logger.info("No completed editorial report for book %s; using neutral priorities", book_id)
            return None, QualityFindings()
        return report.id, QualityFindings(chapter_results=report.chapter_results or [])


class NoQualitySignals:
    async def chapter_issues(self, db: AsyncSession, book_id: UUID) -> tuple[Optional[UUID], QualityFindings]:
        return None, QualityFindings()
