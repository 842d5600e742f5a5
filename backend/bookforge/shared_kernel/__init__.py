"""Shared kernel primitives (events, value objects, errors)."""

from .domain_events import (
    DomainEvent,
    JobCompletedEvent,
    JobFailedEvent,
    VersionCreatedEvent,
    ProposalAppliedEvent,
    BookCompletedEvent,
)
from .exceptions import (
    DomainException,
    FatalPreconditionError,
    ValidationError,
    EntityNotFoundError,
    InvalidStateTransitionError,
    ExternalServiceError,
    TransientProviderError,
    RateLimitError,
    MalformedResponseError,
    RetryableHandlerError,
)
from .value_objects import WordCount, ToleranceBand, round_half_up

__all__ = [
    "DomainEvent",
    "JobCompletedEvent",
    "JobFailedEvent",
    "VersionCreatedEvent",
    "ProposalAppliedEvent",
    "BookCompletedEvent",
    "DomainException",
    "FatalPreconditionError",
    "ValidationError",
    "EntityNotFoundError",
    "InvalidStateTransitionError",
    "ExternalServiceError",
    "TransientProviderError",
    "RateLimitError",
    "MalformedResponseError",
    "RetryableHandlerError",
    "WordCount",
    "ToleranceBand",
    "round_half_up",
]
