"""Database models"""
from bookforge.models.project import Project, Book
from bookforge.models.book_version import BookVersion
from bookforge.models.chapter import Chapter, ChapterEdit, ChapterStatus
from bookforge.models.job import Job, JobStatus, JobType, job_type_name
from bookforge.models.editorial_report import EditorialReport
from bookforge.models.revision import (
    ChapterReductionProposal,
    ProposalStatus,
    RevisionSession,
    RevisionStatus,
    UserDecision,
)
from bookforge.models.completion import AnalyticsStatus, BookCompletion

__all__ = [
    "Project",
    "Book",
    "BookVersion",
    "Chapter",
    "ChapterEdit",
    "ChapterStatus",
    "Job",
    "JobStatus",
    "JobType",
    "job_type_name",
    "EditorialReport",
    "ChapterReductionProposal",
    "ProposalStatus",
    "RevisionSession",
    "RevisionStatus",
    "UserDecision",
    "AnalyticsStatus",
    "BookCompletion",
]
