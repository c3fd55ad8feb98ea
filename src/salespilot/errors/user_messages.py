"""Operator-facing error messages for SalesPilot.

Maps error codes to short, human-readable messages and recovery hints so the
CLI and job status views never surface raw tracebacks.
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Error Message Catalog
# =============================================================================

ERROR_MESSAGES: dict[str, str] = {
    # Dependency errors
    "TRANSIENT_ERROR": "An external service had a temporary problem.",
    "CALL_TIMEOUT": "An external service took too long to answer.",
    "RATE_LIMITED": "An external service is rate limiting requests.",
    "CIRCUIT_OPEN": "An external service is unhealthy and calls are paused.",
    # Caller errors
    "CLIENT_ERROR": "The request was rejected as invalid.",
    "VALIDATION_ERROR": "An internal consistency check failed; the item was dropped.",
    # Queue errors
    "QUEUE_FULL": "The job queue is full. Try again once running jobs finish.",
    "JOB_NOT_FOUND": "The job wasn't found.",
    "JOB_CANCELLED": "The job was cancelled.",
    "INVALID_TRANSITION": "That status change isn't allowed.",
    "STATE_RACE": "Someone else changed this record at the same time.",
    # Campaign errors
    "ENROLLMENT_NOT_FOUND": "The campaign enrollment wasn't found.",
    # Autonomous mode
    "CYCLE_ABORTED": "An autonomous cycle stopped before finishing.",
    # Configuration errors
    "CONFIGURATION_ERROR": "There's a configuration issue.",
    # Generic
    "SALESPILOT_ERROR": "An unexpected error occurred. Please try again.",
    "UNKNOWN_ERROR": "Something went wrong. Please try again.",
}


# =============================================================================
# Recovery Suggestions
# =============================================================================

RECOVERY_SUGGESTIONS: dict[str, str] = {
    "TRANSIENT_ERROR": "Re-run the job later: salespilot jobs enqueue ...",
    "CALL_TIMEOUT": "Check the provider status page, then retry.",
    "RATE_LIMITED": "Lower the daily cap or wait for the provider quota to reset.",
    "CIRCUIT_OPEN": "Wait for the circuit reset timeout; it probes recovery automatically.",
    "CLIENT_ERROR": "Check the job payload and provider field mappings.",
    "VALIDATION_ERROR": "Report this; it indicates a bug rather than bad input.",
    "QUEUE_FULL": "Inspect the backlog: salespilot jobs stats",
    "JOB_NOT_FOUND": "List jobs with: salespilot jobs list",
    "JOB_CANCELLED": "Re-enqueue the job if the work is still needed.",
    "INVALID_TRANSITION": "Check the current status first: salespilot jobs status <id>",
    "STATE_RACE": "Re-read the record and try again.",
    "ENROLLMENT_NOT_FOUND": "The event may have arrived before enrollment; it will be retried.",
    "CYCLE_ABORTED": "Check the failed stage: salespilot autonomous status",
    "CONFIGURATION_ERROR": "Check config: salespilot config validate",
    "SALESPILOT_ERROR": "If this persists, please report the issue.",
    "UNKNOWN_ERROR": "Check the logs for details.",
}


# =============================================================================
# Helper Functions
# =============================================================================


def _error_code(error: Any) -> str:
    if hasattr(error, "code"):
        return error.code
    if isinstance(error, str):
        return error
    return type(error).__name__.upper()


def get_user_message(error: Any) -> str:
    """Get user-friendly message for an error or error code."""
    code = _error_code(error)
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES["UNKNOWN_ERROR"])


def get_recovery_suggestion(error: Any) -> str:
    """Get recovery suggestion for an error or error code."""
    code = _error_code(error)
    return RECOVERY_SUGGESTIONS.get(code, RECOVERY_SUGGESTIONS["UNKNOWN_ERROR"])


def format_error_for_user(error: Any) -> str:
    """Format an error as message plus recovery hint."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    return f"{message}\n\nSuggestion: {suggestion}"


def format_error_for_cli(error: Any) -> str:
    """Format error for CLI output (rich markup)."""
    message = get_user_message(error)
    suggestion = get_recovery_suggestion(error)
    return f"[red]Error:[/red] {message}\n[dim]Suggestion: {suggestion}[/dim]"
