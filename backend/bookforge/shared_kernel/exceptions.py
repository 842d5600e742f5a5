"""Shared kernel exception hierarchy."""
from datetime import datetime
from typing import Optional, Dict, Any


class DomainException(Exception):
    """Base exception for all domain errors."""

    default_code = "domain_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}


class FatalPreconditionError(DomainException):
    """Raised when an operation cannot run against the current persisted state.

    Never retried. The caller gets the error and nothing has been written.
    """

    default_code = "precondition_failed"


class ValidationError(FatalPreconditionError):
    """Raised when domain validation fails."""

    default_code = "validation_error"


class EntityNotFoundError(FatalPreconditionError):
    """Raised when a domain entity is not found."""

    default_code = "not_found"


class InvalidStateTransitionError(FatalPreconditionError):
    """Raised when a state machine transition is not allowed from the current state."""

    default_code = "invalid_state"


class ExternalServiceError(DomainException):
    """Raised when an external service fails."""

    default_code = "external_service_error"


class TransientProviderError(ExternalServiceError):
    """Raised when the provider asks callers to back off for a while."""

    default_code = "transient_provider_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        reset_at: Optional[datetime] = None,
    ) -> None:
        super().__init__(message, code, details)
        self.reset_at = reset_at


class RateLimitError(TransientProviderError):
    """Raised when the provider rejects a call with a rate limit."""

    default_code = "rate_limited"


class MalformedResponseError(ExternalServiceError):
    """Raised when AI output fails structural validation."""

    default_code = "malformed_response"


class RetryableHandlerError(DomainException):
    """Raised by job handlers for failures worth another attempt."""

    default_code = "retryable"
