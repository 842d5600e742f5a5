"""Queries for the chapters that currently make up a book.

A book's current chapters are those of its active version. A book that has
never been versioned keeps its legacy chapters (version_id NULL) instead.
"""
from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookforge.models.book_version import BookVersion
from bookforge.models.chapter import Chapter


async def active_version_id(db: AsyncSession, book_id: UUID) -> Optional[UUID]:
    return await db.scalar(
        select(BookVersion.id).where(BookVersion.book_id == book_id, BookVersion.is_active.is_(True))
    )


def chapters_in_version(book_id: UUID, version_id: Optional[UUID]) -> Select:
    stmt = select(Chapter).where(Chapter.book_id == book_id)
    if version_id is None:
        stmt = stmt.where(Chapter.version_id.is_(None))
    else:
        stmt = stmt.where(Chapter.version_id == version_id)
    return stmt.order_by(Chapter.chapter_number).execution_options(populate_existing=True)


async def current_chapters(db: AsyncSession, book_id: UUID) -> List[Chapter]:
    version_id = await active_version_id(db, book_id)
    result = await db.scalars(chapters_in_version(book_id, version_id))
    return list(result.all())
