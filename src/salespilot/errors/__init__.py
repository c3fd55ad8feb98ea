"""Centralized error definitions for SalesPilot.

This module provides the error taxonomy shared by the job queue, the circuit
breakers, the retry policy and the campaign state machine, together with the
helpers that classify arbitrary exceptions into machine-readable failure
reasons.

Usage:
    from salespilot.errors import (
        SalesPilotError,
        CircuitOpenError,
        classify_exception,
    )

    try:
        await breaker.call(client.upsert_contact, contact)
    except SalesPilotError as e:
        print(e.user_message)
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional

import httpx

from salespilot.errors.user_messages import (
    format_error_for_cli,
    format_error_for_user,
    get_recovery_suggestion,
    get_user_message,
)


class FailureReason(str, Enum):
    """Machine-readable reason attached to failed jobs."""

    TRANSIENT = "transient"
    CLIENT = "client"
    CIRCUIT_OPEN = "circuit-open"
    VALIDATION = "validation"


# =============================================================================
# Base Error
# =============================================================================


class SalesPilotError(Exception):
    """Base exception for all SalesPilot errors.

    Attributes:
        code: Error code for categorization
        user_message: User-friendly message (optional override)
        recoverable: Whether the error is potentially recoverable
        details: Additional error details for debugging
    """

    code: str = "SALESPILOT_ERROR"
    default_message: str = "An unexpected error occurred"
    recoverable: bool = True
    reason: FailureReason = FailureReason.TRANSIENT

    def __init__(
        self,
        message: str | None = None,
        *,
        user_message: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.message = message or self.default_message
        self._user_message = user_message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Get user-friendly message."""
        if self._user_message:
            return self._user_message
        return get_user_message(self)

    @property
    def recovery_suggestion(self) -> str:
        """Get recovery suggestion."""
        return get_recovery_suggestion(self)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code,
            "reason": self.reason.value,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "details": self.details,
        }


# =============================================================================
# Dependency Errors
# =============================================================================


class TransientError(SalesPilotError):
    """Temporary dependency failure. Retried, and counted by circuit breakers."""

    code = "TRANSIENT_ERROR"
    default_message = "Temporary failure calling an external service"


class CallTimeoutError(TransientError):
    """An external call exceeded its time budget."""

    code = "CALL_TIMEOUT"
    default_message = "External call timed out"


class RateLimitedError(TransientError):
    """The dependency answered 429."""

    code = "RATE_LIMITED"
    default_message = "External service is rate limiting requests"


class ClientError(SalesPilotError):
    """Caller or input mistake. Never retried, never counted by breakers."""

    code = "CLIENT_ERROR"
    default_message = "The request was rejected as invalid"
    recoverable = False
    reason = FailureReason.CLIENT


class CircuitOpenError(SalesPilotError):
    """Synthetic rejection raised while a dependency's circuit is open."""

    code = "CIRCUIT_OPEN"
    default_message = "Circuit is open; call rejected without contacting the service"
    reason = FailureReason.CIRCUIT_OPEN

    def __init__(self, dependency: str, message: str | None = None, **kwargs) -> None:
        self.dependency = dependency
        super().__init__(
            message or f"Circuit '{dependency}' is open",
            details={"dependency": dependency, **kwargs.pop("details", {})},
            **kwargs,
        )


class ValidationError(SalesPilotError):
    """Invariant violation in a job or enrollment (programming contract)."""

    code = "VALIDATION_ERROR"
    default_message = "Invariant violation"
    recoverable = False
    reason = FailureReason.VALIDATION


# =============================================================================
# Queue & Campaign Errors
# =============================================================================


class QueueFullError(SalesPilotError):
    """The job queue reached its hard capacity."""

    code = "QUEUE_FULL"
    default_message = "Job queue is at capacity"


class JobNotFoundError(SalesPilotError, KeyError):
    """Raised when a job doesn't exist in the queue."""

    code = "JOB_NOT_FOUND"
    default_message = "Job not found"
    recoverable = False

    def __str__(self) -> str:
        return self.message


class StateTransitionRaceError(SalesPilotError, RuntimeError):
    """Raised when a conditional update finds the record already changed."""

    code = "STATE_RACE"
    default_message = "Record was modified concurrently"


class JobCancelledError(SalesPilotError):
    """Raised at a checkpoint once cancellation of a running job was requested."""

    code = "JOB_CANCELLED"
    default_message = "Job cancelled"


class InvalidStateTransitionError(SalesPilotError, ValueError):
    """Raised when a state machine transition is not allowed."""

    code = "INVALID_TRANSITION"
    default_message = "Invalid state transition"
    recoverable = False
    reason = FailureReason.VALIDATION


class EnrollmentNotFoundError(SalesPilotError, KeyError):
    """No enrollment with the given id exists (yet)."""

    code = "ENROLLMENT_NOT_FOUND"
    default_message = "Enrollment not found"

    def __str__(self) -> str:
        return self.message


class ConfigurationError(SalesPilotError):
    """Raised when configuration is invalid or cannot be loaded."""

    code = "CONFIGURATION_ERROR"
    default_message = "Invalid configuration"
    recoverable = False
    reason = FailureReason.CLIENT


# =============================================================================
# Classification
# =============================================================================


def status_code_of(exc: BaseException) -> Optional[int]:
    """Return the HTTP status carried by an exception, if any."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(exc: BaseException) -> FailureReason:
    """Map any exception to the failure reason reported on jobs.

    Args:
        exc: The exception raised while executing a job or call

    Returns:
        FailureReason for the job record
    """
    if isinstance(exc, SalesPilotError):
        return exc.reason
    status = status_code_of(exc)
    if status is not None:
        if status == 429 or status >= 500:
            return FailureReason.TRANSIENT
        if 400 <= status < 500:
            return FailureReason.CLIENT
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return FailureReason.TRANSIENT
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return FailureReason.CLIENT
    return FailureReason.TRANSIENT


def is_retryable(exc: BaseException) -> bool:
    """Whether the retry policy may attempt the call again."""
    if isinstance(
        exc, (CircuitOpenError, JobCancelledError, QueueFullError, EnrollmentNotFoundError)
    ):
        return False
    return classify_exception(exc) is FailureReason.TRANSIENT


def handle_error(error: Exception) -> str:
    """Handle an error and return a user-friendly message."""
    return format_error_for_user(error)


def is_recoverable(error: Exception) -> bool:
    """Check if an error is potentially recoverable."""
    if isinstance(error, SalesPilotError):
        return error.recoverable
    return False


__all__ = [
    "FailureReason",
    "SalesPilotError",
    "TransientError",
    "CallTimeoutError",
    "RateLimitedError",
    "ClientError",
    "CircuitOpenError",
    "ValidationError",
    "QueueFullError",
    "JobNotFoundError",
    "JobCancelledError",
    "InvalidStateTransitionError",
    "StateTransitionRaceError",
    "EnrollmentNotFoundError",
    "ConfigurationError",
    "status_code_of",
    "classify_exception",
    "is_retryable",
    "handle_error",
    "is_recoverable",
    "get_user_message",
    "get_recovery_suggestion",
    "format_error_for_user",
    "format_error_for_cli",
]
