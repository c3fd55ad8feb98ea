"""Campaign enrollments: sequences, the event state machine and its inbox."""

from .inbox import ORPHAN_RETRY_DELAYS, DeadLetter, EventInbox, InboxStats
from .models import (
    TERMINAL_ENROLLMENT_STATUSES,
    BounceType,
    CampaignEvent,
    CampaignSequence,
    Channel,
    Engagement,
    Enrollment,
    EnrollmentChannel,
    EnrollmentStatus,
    EventOutcome,
    EventType,
    RecordedEvent,
    SequenceStep,
)
from .state_machine import (
    ENROLLMENT_TRANSITIONS,
    ApplyResult,
    EnrollmentStateMachine,
    transition,
    validate_enrollment_transition,
)
from .store import EnrollmentStore

__all__ = [
    "ENROLLMENT_TRANSITIONS",
    "ORPHAN_RETRY_DELAYS",
    "TERMINAL_ENROLLMENT_STATUSES",
    "ApplyResult",
    "BounceType",
    "CampaignEvent",
    "CampaignSequence",
    "Channel",
    "DeadLetter",
    "Engagement",
    "Enrollment",
    "EnrollmentChannel",
    "EnrollmentStateMachine",
    "EnrollmentStatus",
    "EnrollmentStore",
    "EventInbox",
    "EventOutcome",
    "EventType",
    "InboxStats",
    "RecordedEvent",
    "SequenceStep",
    "transition",
    "validate_enrollment_transition",
]
