"""Word-count revision session and proposal models"""
from __future__ import annotations

from datetime import datetime
import enum
from typing import List, Optional
from uuid import UUID
import uuid

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, Text, UniqueConstraint, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from bookforge.db.base import Base
from bookforge.models.types import PydanticJSON, str_enum, utc_now
from bookforge.schemas.quality import ChapterIssues
from bookforge.schemas.revision import CutExplanation


class RevisionStatus(str, enum.Enum):
    """Revision session status"""
    CALCULATING = "calculating"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


ACTIVE_REVISION_STATUSES = (
    RevisionStatus.CALCULATING,
    RevisionStatus.READY,
    RevisionStatus.IN_PROGRESS,
)


class ProposalStatus(str, enum.Enum):
    """Chapter reduction proposal status"""
    PENDING = "pending"
    GENERATING = "generating"
    READY = "ready"
    APPLIED = "applied"
    REJECTED = "rejected"
    ERROR = "error"


class UserDecision(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RevisionSession(Base):
    """A bounded workflow taking a book from its current length toward a target."""
    __tablename__ = "revision_sessions"
    __table_args__ = (
        Index(
            "uq_revision_sessions_one_active",
            "book_id",
            unique=True,
            sqlite_where=text("status IN ('calculating', 'ready', 'in_progress')"),
            postgresql_where=text("status IN ('calculating', 'ready', 'in_progress')"),
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("books.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    editorial_report_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("editorial_reports.id", ondelete="SET NULL"),
        nullable=True,
    )
    source_version_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("book_versions.id", ondelete="SET NULL"),
        nullable=True,
    )
    target_version_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid,
        ForeignKey("book_versions.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Word count targets
    current_word_count: Mapped[int] = mapped_column(Integer, nullable=False)
    target_word_count: Mapped[int] = mapped_column(Integer, nullable=False)
    tolerance_percent: Mapped[float] = mapped_column(Float, nullable=False, default=5.0)
    min_acceptable: Mapped[int] = mapped_column(Integer, nullable=False)
    max_acceptable: Mapped[int] = mapped_column(Integer, nullable=False)
    words_to_cut: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[RevisionStatus] = mapped_column(
        str_enum(RevisionStatus),
        default=RevisionStatus.CALCULATING,
        nullable=False,
    )
    chapters_reviewed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    chapters_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    words_cut_so_far: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RevisionStatus.COMPLETED, RevisionStatus.ABANDONED)


class ChapterReductionProposal(Base):
    """An AI condensation candidate for one chapter, awaiting a user decision."""
    __tablename__ = "chapter_reduction_proposals"
    __table_args__ = (
        UniqueConstraint("revision_id", "chapter_id", name="uq_proposals_revision_chapter"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    revision_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("revision_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chapter_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("chapters.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Targets
    original_word_count: Mapped[int] = mapped_column(Integer, nullable=False)
    target_word_count: Mapped[int] = mapped_column(Integer, nullable=False)
    reduction_percent: Mapped[float] = mapped_column(Float, nullable=False)
    priority_score: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    quality_issues: Mapped[Optional[ChapterIssues]] = mapped_column(PydanticJSON(ChapterIssues), nullable=True)

    # Generated condensation
    status: Mapped[ProposalStatus] = mapped_column(
        str_enum(ProposalStatus),
        default=ProposalStatus.PENDING,
        nullable=False,
    )
    condensed_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    condensed_word_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    actual_reduction: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cuts_explanation: Mapped[Optional[List[CutExplanation]]] = mapped_column(
        PydanticJSON(List[CutExplanation]),
        nullable=True,
    )
    preserved_elements: Mapped[Optional[List[str]]] = mapped_column(PydanticJSON(List[str]), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # User decision
    user_decision: Mapped[UserDecision] = mapped_column(
        str_enum(UserDecision),
        default=UserDecision.PENDING,
        nullable=False,
    )
    user_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    decision_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)
