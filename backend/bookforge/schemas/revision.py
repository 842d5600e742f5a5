"""Schemas for word-count revision sessions."""
from __future__ import annotations

from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from bookforge.schemas.quality import ChapterIssues


class CutExplanation(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    what_was_cut: str
    why: str = ""
    words_removed: int = Field(0, ge=0)


class CondensationResult(BaseModel):
    """Structured output expected from the condensation model."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    condensed_content: str = Field(..., min_length=1)
    cuts_explanation: List[CutExplanation] = Field(default_factory=list)
    preserved_elements: List[str] = Field(default_factory=list)
    word_count: Optional[int] = None


class ChapterTarget(BaseModel):
    chapter_id: UUID
    chapter_number: int
    original_word_count: int
    target_word_count: int
    reduction_percent: float
    priority_score: int = Field(..., ge=0, le=100)
    issues: Optional[ChapterIssues] = None


class RevisionProgress(BaseModel):
    revision_id: UUID
    status: str
    original_word_count: int
    current_word_count: int
    target_word_count: int
    min_acceptable: int
    max_acceptable: int
    words_cut_so_far: int
    words_remaining_to_cut: int
    percent_complete: float
    chapters_reviewed: int
    chapters_total: int
    is_within_tolerance: bool


class CompletionValidation(BaseModel):
    is_valid: bool
    status: Literal["under_target", "within_tolerance", "over_target"]
    current_word_count: int
    min_acceptable: int
    max_acceptable: int
    message: str
