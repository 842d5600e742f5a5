"""Book completion record"""
from __future__ import annotations

from datetime import datetime
import enum
from typing import Optional
from uuid import UUID
import uuid

from sqlalchemy import DateTime, ForeignKey, Integer, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bookforge.db.base import Base
from bookforge.models.types import PydanticJSON, str_enum, utc_now
from bookforge.schemas.completion import ManuscriptAnalytics


class AnalyticsStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BookCompletion(Base):
    """Durable marker that every chapter of a book has content. One row per book."""
    __tablename__ = "book_completions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    completed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    total_chapters: Mapped[int] = mapped_column(Integer, nullable=False)
    total_word_count: Mapped[int] = mapped_column(Integer, nullable=False)

    analytics_status: Mapped[AnalyticsStatus] = mapped_column(
        str_enum(AnalyticsStatus),
        default=AnalyticsStatus.PENDING,
        nullable=False,
    )
    analytics_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    analytics_completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cached_analytics: Mapped[Optional[ManuscriptAnalytics]] = mapped_column(
        PydanticJSON(ManuscriptAnalytics),
        nullable=True,
    )
