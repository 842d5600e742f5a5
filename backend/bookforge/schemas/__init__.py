"""Pydantic schemas for value types and service results"""
from bookforge.schemas.quality import (
    ChapterIssues,
    ExpositionIssue,
    PacingIssue,
    QualityFindings,
    ScenePurpose,
)
from bookforge.schemas.revision import (
    ChapterTarget,
    CompletionValidation,
    CondensationResult,
    CutExplanation,
    RevisionProgress,
)
from bookforge.schemas.versioning import (
    CreateVersionOptions,
    OutlineSnapshot,
    PlotSnapshot,
    VersioningRequirement,
    VersionSummary,
)
from bookforge.schemas.jobs import (
    BookGenerationResult,
    ChapterWorkflowStatus,
    JobSummary,
    QueueStats,
    WorkflowJobs,
)
from bookforge.schemas.completion import (
    AnalysisTriggerResult,
    BookCompletionStatus,
    BookCompletionSummary,
    CompletionCheckResult,
    ManuscriptAnalytics,
)

__all__ = [
    "ChapterIssues",
    "ExpositionIssue",
    "PacingIssue",
    "QualityFindings",
    "ScenePurpose",
    "ChapterTarget",
    "CompletionValidation",
    "CondensationResult",
    "CutExplanation",
    "RevisionProgress",
    "CreateVersionOptions",
    "OutlineSnapshot",
    "PlotSnapshot",
    "VersioningRequirement",
    "VersionSummary",
    "BookGenerationResult",
    "ChapterWorkflowStatus",
    "JobSummary",
    "QueueStats",
    "WorkflowJobs",
    "AnalysisTriggerResult",
    "BookCompletionStatus",
    "BookCompletionSummary",
    "CompletionCheckResult",
    "ManuscriptAnalytics",
]
