"""Domain models for campaign enrollments and their inbound events."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from salespilot.errors import ClientError, ValidationError


class EnrollmentStatus(str, Enum):
    """Enrollment lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"  # Frozen at current_step, no sends
    COMPLETED = "completed"  # Every step sent
    UNSUBSCRIBED = "unsubscribed"
    BOUNCED = "bounced"  # Hard bounce only


TERMINAL_ENROLLMENT_STATUSES = frozenset(
    {EnrollmentStatus.COMPLETED, EnrollmentStatus.UNSUBSCRIBED, EnrollmentStatus.BOUNCED}
)


class Channel(str, Enum):
    """A single outreach channel; every sequence step and event has one."""

    EMAIL = "email"
    LINKEDIN = "linkedin"


class EnrollmentChannel(str, Enum):
    """Channels an enrollment may be contacted on."""

    EMAIL = "email"
    LINKEDIN = "linkedin"
    BOTH = "both"

    def allows(self, channel: Channel) -> bool:
        return self is EnrollmentChannel.BOTH or self.value == Channel(channel).value


class EventType(str, Enum):
    SENT = "sent"
    OPENED = "opened"
    CLICKED = "clicked"
    REPLIED = "replied"
    BOUNCED = "bounced"
    UNSUBSCRIBED = "unsubscribed"


class BounceType(str, Enum):
    HARD = "hard"
    SOFT = "soft"


class EventOutcome(str, Enum):
    """What applying an event did to its enrollment."""

    ADVANCED = "advanced"
    COMPLETED = "completed"
    TERMINATED = "terminated"
    PAUSED = "paused"  # Reply with stop_on_reply
    ENGAGEMENT = "engagement"
    OUT_OF_ORDER = "out_of_order"  # Sent for a step other than the next one
    NOT_ACTIVE = "not_active"  # Sent while paused
    IGNORED_TERMINAL = "ignored_terminal"
    DUPLICATE = "duplicate"

    @property
    def changed_state(self) -> bool:
        return self in (
            EventOutcome.ADVANCED,
            EventOutcome.COMPLETED,
            EventOutcome.TERMINATED,
            EventOutcome.PAUSED,
            EventOutcome.ENGAGEMENT,
        )


class SequenceStep(BaseModel):
    """One step of a campaign sequence.

    Attributes:
        channel: Channel the step is sent on
        delay_days: Days to wait after the previous step before sending
        template: Provider template reference
    """

    channel: Channel
    delay_days: float = Field(default=0, ge=0, le=365)
    template: Optional[str] = None


class CampaignSequence(BaseModel):
    """Ordered steps of a campaign. Steps are numbered from 1."""

    campaign_id: str = Field(min_length=1)
    steps: List[SequenceStep] = Field(min_length=1)
    stop_on_reply: bool = False

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def step(self, number: int) -> SequenceStep:
        if not 1 <= number <= self.total_steps:
            raise ValidationError(
                f"Step {number} outside sequence of {self.total_steps} steps",
                details={"campaign_id": self.campaign_id, "step_number": number},
            )
        return self.steps[number - 1]

    def check_channel(self, channel: EnrollmentChannel) -> None:
        """Reject enrollments whose channel cannot carry every step.

        Raises:
            ClientError: If a step uses a channel the enrollment does not allow
        """
        for number, step in enumerate(self.steps, start=1):
            if not channel.allows(step.channel):
                raise ClientError(
                    f"Campaign {self.campaign_id} step {number} is {step.channel.value}; "
                    f"enrollment channel is {channel.value}",
                    details={"campaign_id": self.campaign_id, "step_number": number},
                )


@dataclass(slots=True)
class Engagement:
    """Per-enrollment engagement statistics."""

    sent: int = 0
    opened: int = 0
    clicked: int = 0
    replied: int = 0
    soft_bounced: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "sent": self.sent,
            "opened": self.opened,
            "clicked": self.clicked,
            "replied": self.replied,
            "soft_bounced": self.soft_bounced,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Engagement":
        return cls(**{key: int(data.get(key, 0)) for key in cls.__slots__})


@dataclass(slots=True)
class Enrollment:
    """Snapshot of one contact's progress through one campaign."""

    enrollment_id: str
    campaign_id: str
    contact_id: str
    total_steps: int
    channel: EnrollmentChannel = EnrollmentChannel.EMAIL
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    current_step: int = 0  # Steps already sent
    enrolled_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    next_action_at: Optional[datetime] = None
    in_flight_step: Optional[int] = None
    completed_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    engagement: Engagement = field(default_factory=Engagement)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ENROLLMENT_STATUSES

    @property
    def next_step(self) -> Optional[int]:
        """The step the enrollment is waiting on, if any remain."""
        if self.current_step >= self.total_steps:
            return None
        return self.current_step + 1

    def copy(self, **changes: Any) -> "Enrollment":
        changes.setdefault("engagement", replace(self.engagement))
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enrollment_id": self.enrollment_id,
            "campaign_id": self.campaign_id,
            "contact_id": self.contact_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "channel": self.channel.value,
            "enrolled_at": _iso(self.enrolled_at),
            "last_event_at": _iso(self.last_event_at),
            "next_action_at": _iso(self.next_action_at),
            "in_flight_step": self.in_flight_step,
            "completed_at": _iso(self.completed_at),
            "terminated_at": _iso(self.terminated_at),
            "engagement": self.engagement.to_dict(),
        }


@dataclass(frozen=True)
class CampaignEvent:
    """An inbound provider event for one enrollment.

    ``step_number`` is 1-based and required for ``sent`` events. Bounces carry
    ``metadata["bounce_type"]`` (``hard`` unless stated otherwise).
    """

    enrollment_id: str
    event_type: EventType
    channel: Channel
    timestamp: datetime
    step_number: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    provider_event_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "event_type", EventType(self.event_type))
        object.__setattr__(self, "channel", Channel(self.channel))
        if self.timestamp.tzinfo is None:
            raise ClientError(
                "Campaign event timestamps must be timezone-aware",
                details={"enrollment_id": self.enrollment_id},
            )

    @property
    def idempotency_key(self) -> str:
        timestamp = self.timestamp.astimezone(timezone.utc).isoformat()
        return "|".join(
            (self.enrollment_id, self.event_type.value, timestamp, self.channel.value)
        )

    @property
    def bounce_type(self) -> BounceType:
        if str(self.metadata.get("bounce_type", "")).lower() == BounceType.SOFT.value:
            return BounceType.SOFT
        return BounceType.HARD

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enrollment_id": self.enrollment_id,
            "event_type": self.event_type.value,
            "channel": self.channel.value,
            "timestamp": self.timestamp.isoformat(),
            "step_number": self.step_number,
            "metadata": self.metadata,
            "provider_event_id": self.provider_event_id,
        }


@dataclass(frozen=True)
class RecordedEvent:
    """An event as stored in an enrollment's history."""

    event: CampaignEvent
    outcome: EventOutcome
    received_at: datetime


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
