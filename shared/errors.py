"""
Shared error handling for the admission pipeline.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple


class FailureKind(str, Enum):
    """Every way a request can fail to produce a success envelope."""

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    TIMEOUT = "TIMEOUT"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    UNHANDLED = "UNHANDLED"


@dataclass(frozen=True)
class Violation:
    """A single field-level validation problem."""

    field: str
    message: str


@dataclass(frozen=True)
class Failure:
    """Failure value routed by the pipeline to the error translator.

    Stages return these instead of raising; ``cause`` keeps the original
    exception for logging and is never serialized.
    """

    kind: FailureKind
    message: str
    violations: Tuple[Violation, ...] = ()
    retry_after_seconds: Optional[float] = None
    cause: Optional[BaseException] = field(default=None, compare=False, repr=False)

    @property
    def has_retry_hint(self) -> bool:
        return self.retry_after_seconds is not None and math.isfinite(self.retry_after_seconds)


class AdmissionError(Exception):
    """Base exception for failures raised by handlers and verifiers."""

    kind: FailureKind = FailureKind.UNHANDLED
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[List[Violation]] = None):
        self.message = message or self.default_message
        self.details = list(details or [])
        super().__init__(self.message)

    def to_failure(self) -> Failure:
        """Convert to a failure value."""
        return Failure(
            kind=self.kind,
            message=self.message,
            violations=tuple(self.details),
            cause=self,
        )


class UnauthorizedError(AdmissionError):
    """Credential missing or not accepted."""

    kind = FailureKind.UNAUTHORIZED
    default_message = "Authentication required"


class ForbiddenError(AdmissionError):
    """Credential accepted but lacks the required scope."""

    kind = FailureKind.FORBIDDEN
    default_message = "Insufficient permissions"


class ValidationFailedError(AdmissionError):
    """Input did not match the declared schema."""

    kind = FailureKind.VALIDATION_FAILED
    default_message = "Request validation failed"


class NotFoundError(AdmissionError):
    """Requested resource does not exist."""

    kind = FailureKind.NOT_FOUND
    default_message = "Resource not found"


class StageTimeoutError(AdmissionError):
    """A pipeline stage exceeded its time budget."""

    kind = FailureKind.TIMEOUT
    default_message = "Request timed out"


class ShuttingDownError(AdmissionError):
    """Service is draining and refuses new work."""

    kind = FailureKind.SHUTTING_DOWN
    default_message = "Service unavailable, shutting down"


class RateLimitExceededError(AdmissionError):
    """Rate limiting errors."""

    kind = FailureKind.RATE_LIMIT_EXCEEDED
    default_message = "Rate limit exceeded"

    def __init__(self, message: Optional[str] = None, retry_after_seconds: Optional[float] = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    def to_failure(self) -> Failure:
        return Failure(
            kind=self.kind,
            message=self.message,
            retry_after_seconds=self.retry_after_seconds,
            cause=self,
        )


def failure_from_exception(exc: BaseException) -> Failure:
    """Map an arbitrary exception to a failure value.

    Anything that is not an :class:`AdmissionError` becomes UNHANDLED with a
    generic message; the original exception rides along as ``cause``.
    """
    if isinstance(exc, AdmissionError):
        return exc.to_failure()
    return Failure(
        kind=FailureKind.UNHANDLED,
        message=AdmissionError.default_message,
        cause=exc,
    )
