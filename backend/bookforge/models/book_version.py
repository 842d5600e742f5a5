"""Book version model"""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID
import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from bookforge.db.base import Base
from bookforge.models.types import PydanticJSON, utc_now
from bookforge.schemas.versioning import OutlineSnapshot, PlotSnapshot


class BookVersion(Base):
    """One snapshot of a book's chapters. At most one version per book is active."""
    __tablename__ = "book_versions"
    __table_args__ = (
        UniqueConstraint("book_id", "version_number", name="uq_book_versions_book_number"),
        Index(
            "uq_book_versions_one_active",
            "book_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    version_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Snapshots captured by value at creation
    plot_snapshot: Mapped[Optional[PlotSnapshot]] = mapped_column(PydanticJSON(PlotSnapshot), nullable=True)
    outline_snapshot: Mapped[Optional[OutlineSnapshot]] = mapped_column(
        PydanticJSON(OutlineSnapshot),
        nullable=True,
    )

    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    word_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    chapter_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return f"<BookVersion {self.version_number} active={self.is_active}>"
