"""Editorial report written by the quality analysis pipeline"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID
import uuid

from sqlalchemy import DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bookforge.db.base import Base
from bookforge.models.types import PydanticJSON, utc_now
from bookforge.schemas.quality import ChapterIssues


class EditorialReport(Base):
    __tablename__ = "editorial_reports"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    book_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    chapter_results: Mapped[Optional[List[ChapterIssues]]] = mapped_column(
        PydanticJSON(List[ChapterIssues]),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
