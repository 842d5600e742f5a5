"""Background job model"""
from __future__ import annotations

from datetime import datetime
import enum
from typing import Optional, Union
from uuid import UUID

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from bookforge.db.base import Base
from bookforge.models.types import str_enum, utc_now


class JobStatus(str, enum.Enum):
    """Job lifecycle: pending -> running -> completed | pending | failed"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, enum.Enum):
    """Known job types. The column is a plain string so new types need no schema change."""
    GENERATE_CHAPTER = "generate_chapter"
    GENERATE_SUMMARY = "generate_summary"
    UPDATE_STATES = "update_states"
    COHERENCE_CHECK = "coherence_check"
    ORIGINALITY_CHECK = "originality_check"
    ANALYZE_BOOK = "analyze_book"


def job_type_name(job_type: Union[JobType, str]) -> str:
    """Plain string key for a job type (enum members hash by name, not value)."""
    if isinstance(job_type, JobType):
        return job_type.value
    return str(job_type)


class Job(Base):
    """Durable work item.

    The integer id is strictly increasing and doubles as the per-target
    sequence key: a job never starts while an earlier job for the same target
    is pending or running.
    """
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_id", "status", "id"),
        Index("ix_jobs_target_id_id", "target_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        str_enum(JobStatus),
        default=JobStatus.PENDING,
        nullable=False,
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    available_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Lease: refreshed by the executing worker while the handler runs
    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Job {self.id} {self.type} {self.status}>"
