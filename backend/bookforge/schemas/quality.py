"""Schemas for editorial quality findings used to prioritise revisions."""
from __future__ import annotations

from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _IssueModel(BaseModel):
    # Reports arrive in camelCase from the analysis pipeline
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ScenePurpose(_IssueModel):
    earned: bool = True
    reasoning: str = ""
    recommendation: Optional[str] = None


class ExpositionIssue(_IssueModel):
    issue: str
    quote: str = ""
    suggestion: str = ""
    location: str = ""
    severity: str = "moderate"


class PacingIssue(_IssueModel):
    issue: str
    location: str = ""
    suggestion: str = ""
    severity: str = "moderate"


class ChapterIssues(_IssueModel):
    """Quality findings for one chapter."""

    chapter_id: Optional[UUID] = None
    chapter_number: Optional[int] = None
    scene_purpose: Optional[ScenePurpose] = None
    exposition_issues: List[ExpositionIssue] = Field(default_factory=list)
    pacing_issues: List[PacingIssue] = Field(default_factory=list)

    def has_findings(self) -> bool:
        return bool(
            (self.scene_purpose and not self.scene_purpose.earned)
            or self.exposition_issues
            or self.pacing_issues
        )


class QualityFindings(_IssueModel):
    """Per-chapter findings for a whole book."""

    chapter_results: List[ChapterIssues] = Field(default_factory=list)

    def for_chapter(self, chapter_id: UUID, chapter_number: int) -> Optional[ChapterIssues]:
        for result in self.chapter_results:
            if result.chapter_id == chapter_id or result.chapter_number == chapter_number:
                return result
        return None
