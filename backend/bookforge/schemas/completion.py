"""Schemas for book completion and post-completion analytics."""
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator


class BookCompletionStatus(BaseModel):
    book_id: UUID
    is_complete: bool
    total_chapters: int
    completed_chapters: int
    total_word_count: int
    completed_at: Optional[datetime] = None
    analytics_status: Optional[str] = None


class BookCompletionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    book_id: UUID
    project_id: UUID
    completed_at: datetime
    total_chapters: int
    total_word_count: int
    analytics_status: str

    @field_validator("analytics_status", mode="before")
    @classmethod
    def _status_value(cls, v):
        return getattr(v, "value", v)


class CompletionCheckResult(BaseModel):
    is_now_complete: bool
    completion_record: Optional[BookCompletionSummary] = None
    analysis_triggered: bool = False


class AnalysisTriggerResult(BaseModel):
    success: bool
    message: str
    job_id: Optional[int] = None


class ManuscriptAnalytics(BaseModel):
    """Statistics cached on the completion record by the analysis job."""

    chapter_count: int
    total_word_count: int
    average_chapter_words: float
    shortest_chapter_number: Optional[int] = None
    shortest_chapter_words: int = 0
    longest_chapter_number: Optional[int] = None
    longest_chapter_words: int = 0
    computed_at: datetime
