"""Schemas for book versions and their snapshots."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class PlotSnapshot(BaseModel):
    """Project plot structure captured by value when a version is created."""

    kind: Literal["plot"] = "plot"
    captured_at: datetime
    structure: Optional[Dict[str, Any]] = None


class OutlineSnapshot(BaseModel):
    """Book outline captured by value when a version is created."""

    kind: Literal["outline"] = "outline"
    captured_at: datetime
    outline: Optional[Union[Dict[str, Any], List[Any]]] = None


class CreateVersionOptions(BaseModel):
    name: Optional[str] = Field(None, max_length=255)
    auto_created: bool = False
    clone_from_version_id: Optional[UUID] = None
    clone_legacy: bool = False


class VersionSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    book_id: UUID
    version_number: int
    version_name: Optional[str] = None
    is_active: bool
    word_count: int
    chapter_count: int
    actual_chapter_count: int = 0
    actual_word_count: int = 0
    created_at: datetime
    completed_at: Optional[datetime] = None


class VersioningRequirement(BaseModel):
    """Whether regenerating a book would overwrite existing content."""

    required: bool
    existing_chapter_count: int
    existing_word_count: int
    active_version_id: Optional[UUID] = None
