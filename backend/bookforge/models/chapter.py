"""Chapter and chapter edit models"""
from __future__ import annotations

from datetime import datetime
import enum
from typing import Any, Optional
from uuid import UUID
import uuid

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bookforge.db.base import Base
from bookforge.models.types import JSONType, str_enum, utc_now


class ChapterStatus(str, enum.Enum):
    """Chapter generation status"""
    PENDING = "pending"
    WRITING = "writing"
    COMPLETED = "completed"


class Chapter(Base):
    """Chapter model.

    ``version_id`` is NULL for legacy chapters written before the book had
    versions; those count as the book's content until they are migrated.
    """
    __tablename__ = "chapters"
    __table_args__ = (
        UniqueConstraint("version_id", "chapter_number", name="uq_chapters_version_number"),
        Index("ix_chapters_book_version", "book_id", "version_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
    )
    version_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("book_versions.id", ondelete="CASCADE"),
        nullable=True,
    )
    chapter_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    scene_cards: Mapped[Optional[list[Any]]] = mapped_column(JSONType, nullable=True)
    content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[ChapterStatus] = mapped_column(
        str_enum(ChapterStatus),
        default=ChapterStatus.PENDING,
        nullable=False,
    )
    word_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<Chapter {self.chapter_number} v={self.version_id}>"


class ChapterEdit(Base):
    """Audit trail of content edits made to a chapter"""
    __tablename__ = "chapter_edits"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    chapter_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("chapters.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("book_versions.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    edit_type: Mapped[str] = mapped_column(String(50), nullable=False)  # "manual", "word_count_revision", ...
    edited_content: Mapped[str] = mapped_column(Text, nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
