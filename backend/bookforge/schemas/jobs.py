"""Schemas for the background job queue and chapter workflows."""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, field_validator


class QueueStats(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class JobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: str
    target_id: UUID
    status: str
    attempts: int
    error: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    heartbeat_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status_value(cls, v):
        return getattr(v, "value", v)


class WorkflowJobs(BaseModel):
    chapter_id: UUID
    generate_chapter: int
    generate_summary: int
    update_states: int

    @property
    def job_ids(self) -> List[int]:
        return [self.generate_chapter, self.generate_summary, self.update_states]


class BookGenerationResult(BaseModel):
    book_id: UUID
    chapters_queued: int
    jobs_created: int


class ChapterWorkflowStatus(BaseModel):
    chapter_id: UUID
    chapter_status: str
    word_count: int
    jobs: List[JobSummary]
