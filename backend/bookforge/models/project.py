"""Project and book models"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID
import uuid

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import Mapped, mapped_column

from bookforge.db.base import Base
from bookforge.models.types import JSONType, utc_now


class Project(Base):
    """Project model"""
    __tablename__ = "projects"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    genre: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Structure
    plot_structure: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    story_bible: Mapped[dict[str, Any]] = mapped_column(
        # as_mutable binds to the type instance, so this column gets its own
        MutableDict.as_mutable(JSON().with_variant(JSONB(), "postgresql")),
        default=dict,
    )  # characters, world rules, running character states

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<Project {self.title}>"


class Book(Base):
    """Book model"""
    __tablename__ = "books"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    book_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    outline: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)

    # Completion
    is_complete: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)

    def __repr__(self):
        return f"<Book {self.book_number}: {self.title}>"
