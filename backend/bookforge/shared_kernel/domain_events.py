"""Domain event primitives for the shared kernel."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from uuid import UUID, uuid4
from abc import ABC


@dataclass(frozen=True)
class DomainEvent(ABC):
    """Base class for all domain events."""

    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    correlation_id: Optional[UUID] = None
    causation_id: Optional[UUID] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": str(self.event_id),
            "event_type": self.__class__.__name__,
            "occurred_at": self.occurred_at.isoformat(),
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "causation_id": str(self.causation_id) if self.causation_id else None,
            "payload": self._payload_dict(),
        }

    def _payload_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {}
        for item in fields(self):
            if item.name in {"event_id", "occurred_at", "correlation_id", "causation_id"}:
                continue
            value = getattr(self, item.name)
            payload[item.name] = self._serialize_value(value)
        return payload

    @staticmethod
    def _serialize_value(value: Any) -> Any:
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        return value


# Job queue events
@dataclass(frozen=True)
class JobCompletedEvent(DomainEvent):
    job_id: int = 0
    job_type: str = ""
    target_id: UUID = field(default_factory=uuid4)
    attempts: int = 0


@dataclass(frozen=True)
class JobFailedEvent(DomainEvent):
    job_id: int = 0
    job_type: str = ""
    target_id: UUID = field(default_factory=uuid4)
    attempts: int = 0
    error: str = ""


# Versioning events
@dataclass(frozen=True)
class VersionCreatedEvent(DomainEvent):
    book_id: UUID = field(default_factory=uuid4)
    version_id: UUID = field(default_factory=uuid4)
    version_number: int = 0
    auto_created: bool = False


# Revision events
@dataclass(frozen=True)
class ProposalAppliedEvent(DomainEvent):
    revision_id: UUID = field(default_factory=uuid4)
    proposal_id: UUID = field(default_factory=uuid4)
    chapter_number: int = 0
    words_removed: int = 0


# Completion events
@dataclass(frozen=True)
class BookCompletedEvent(DomainEvent):
    book_id: UUID = field(default_factory=uuid4)
    project_id: UUID = field(default_factory=uuid4)
    total_chapters: int = 0
    total_word_count: int = 0
