"""Campaign enrollment state machine.

Enrollments move ``active -> {paused, completed, unsubscribed, bounced}`` and
``paused -> {active, unsubscribed, bounced}``. Completed, unsubscribed and
bounced are terminal.

Events are applied idempotently: the idempotency key of every applied event is
stored together with the state change in one transaction, so a redelivered
event is recognised and ignored. A ``sent`` event only advances the enrollment
when it is for the step the enrollment is waiting on, which keeps redelivered
or out-of-order provider events from moving progress.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Dict, Optional, Set, Tuple

from salespilot.errors import InvalidStateTransitionError, ValidationError

from .models import (
    BounceType,
    CampaignEvent,
    CampaignSequence,
    Enrollment,
    EnrollmentStatus,
    EventOutcome,
    EventType,
)
from .store import EnrollmentStore

if TYPE_CHECKING:
    from salespilot.audit import AuditLogger


logger = logging.getLogger(__name__)


ENROLLMENT_TRANSITIONS: Dict[EnrollmentStatus, Set[EnrollmentStatus]] = {
    EnrollmentStatus.ACTIVE: {
        EnrollmentStatus.PAUSED,
        EnrollmentStatus.COMPLETED,
        EnrollmentStatus.UNSUBSCRIBED,
        EnrollmentStatus.BOUNCED,
    },
    EnrollmentStatus.PAUSED: {
        EnrollmentStatus.ACTIVE,
        EnrollmentStatus.UNSUBSCRIBED,
        EnrollmentStatus.BOUNCED,
    },
    EnrollmentStatus.COMPLETED: set(),
    EnrollmentStatus.UNSUBSCRIBED: set(),
    EnrollmentStatus.BOUNCED: set(),
}

_ENGAGEMENT_FIELDS = {
    EventType.OPENED: "opened",
    EventType.CLICKED: "clicked",
    EventType.REPLIED: "replied",
}


def validate_enrollment_transition(
    enrollment_id: str, from_status: EnrollmentStatus, to_status: EnrollmentStatus
) -> None:
    """Raises InvalidStateTransitionError for transitions outside the lifecycle."""
    if from_status == to_status:
        return
    if to_status not in ENROLLMENT_TRANSITIONS[from_status]:
        raise InvalidStateTransitionError(
            f"Invalid enrollment transition: {from_status.value} -> {to_status.value}",
            details={"enrollment_id": enrollment_id},
        )


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying one event."""

    outcome: EventOutcome
    enrollment: Enrollment

    @property
    def changed(self) -> bool:
        return self.outcome.changed_state


def transition(
    enrollment: Enrollment,
    event: CampaignEvent,
    sequence: Optional[CampaignSequence] = None,
) -> Tuple[EventOutcome, Enrollment]:
    """Compute the effect of ``event`` on a non-terminal enrollment.

    Pure function: returns the outcome and the updated copy without touching
    storage. Deduplication happens in :class:`EnrollmentStateMachine`.

    Raises:
        ValidationError: For ``sent`` events without a usable step number
    """
    updated = enrollment.copy(last_event_at=_later(enrollment.last_event_at, event.timestamp))

    if event.event_type is EventType.UNSUBSCRIBED:
        return EventOutcome.TERMINATED, _terminate(updated, EnrollmentStatus.UNSUBSCRIBED, event)

    if event.event_type is EventType.BOUNCED:
        if event.bounce_type is BounceType.HARD:
            return EventOutcome.TERMINATED, _terminate(updated, EnrollmentStatus.BOUNCED, event)
        updated.engagement.soft_bounced += 1
        return EventOutcome.ENGAGEMENT, updated

    if event.event_type is EventType.SENT:
        return _advance(enrollment, updated, event, sequence)

    setattr(
        updated.engagement,
        _ENGAGEMENT_FIELDS[event.event_type],
        getattr(updated.engagement, _ENGAGEMENT_FIELDS[event.event_type]) + 1,
    )
    if (
        event.event_type is EventType.REPLIED
        and sequence is not None
        and sequence.stop_on_reply
        and updated.status is EnrollmentStatus.ACTIVE
    ):
        updated.status = EnrollmentStatus.PAUSED
        updated.next_action_at = None
        return EventOutcome.PAUSED, updated
    return EventOutcome.ENGAGEMENT, updated


def _advance(
    original: Enrollment,
    updated: Enrollment,
    event: CampaignEvent,
    sequence: Optional[CampaignSequence],
) -> Tuple[EventOutcome, Enrollment]:
    step = event.step_number
    if step is None:
        raise ValidationError(
            "Sent event without a step number",
            details={"enrollment_id": original.enrollment_id},
        )
    if not 1 <= step <= original.total_steps:
        raise ValidationError(
            f"Sent event for step {step} outside 1..{original.total_steps}",
            details={"enrollment_id": original.enrollment_id, "step_number": step},
        )
    if not original.channel.allows(event.channel):
        raise ValidationError(
            f"Sent event on {event.channel.value} for a {original.channel.value} enrollment",
            details={"enrollment_id": original.enrollment_id, "step_number": step},
        )
    if original.status is not EnrollmentStatus.ACTIVE:
        return EventOutcome.NOT_ACTIVE, original
    if step != original.current_step + 1:
        return EventOutcome.OUT_OF_ORDER, original

    updated.current_step = step
    updated.engagement.sent += 1
    if updated.in_flight_step == step:
        updated.in_flight_step = None

    if updated.current_step == updated.total_steps:
        updated.status = EnrollmentStatus.COMPLETED
        updated.completed_at = event.timestamp
        updated.next_action_at = None
        return EventOutcome.COMPLETED, updated

    delay_days = sequence.step(step + 1).delay_days if sequence is not None else 0
    updated.next_action_at = event.timestamp + timedelta(days=delay_days)
    return EventOutcome.ADVANCED, updated


def _terminate(
    enrollment: Enrollment, status: EnrollmentStatus, event: CampaignEvent
) -> Enrollment:
    enrollment.status = status
    enrollment.terminated_at = event.timestamp
    enrollment.next_action_at = None
    enrollment.in_flight_step = None
    return enrollment


def _later(current: Optional[datetime], candidate: datetime) -> datetime:
    if current is None or candidate > current:
        return candidate
    return current


class EnrollmentStateMachine:
    """Applies events and operator actions to stored enrollments.

    Each enrollment's read-classify-write runs under its record lock, so this
    is the single writer path for enrollment state.
    """

    def __init__(
        self,
        store: EnrollmentStore,
        audit_logger: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._audit = audit_logger

    @property
    def store(self) -> EnrollmentStore:
        return self._store

    def apply_event(self, event: CampaignEvent) -> ApplyResult:
        """Apply one inbound event.

        Raises:
            EnrollmentNotFoundError: If the enrollment does not exist
            ValidationError: If the event violates the enrollment contract; it
                is logged and dropped without touching state
        """
        with self._store.record_lock(event.enrollment_id):
            enrollment = self._store.get(event.enrollment_id)

            if enrollment.is_terminal:
                stored = self._store.commit_event(event, EventOutcome.IGNORED_TERMINAL)
                logger.info(
                    "Event for terminal enrollment recorded without effect",
                    extra={
                        "enrollment_id": enrollment.enrollment_id,
                        "event_type": event.event_type.value,
                        "status": enrollment.status.value,
                    },
                )
                outcome = EventOutcome.IGNORED_TERMINAL if stored else EventOutcome.DUPLICATE
                return ApplyResult(outcome, enrollment)

            if self._store.has_event(event.idempotency_key):
                logger.debug(
                    "Duplicate event ignored",
                    extra={
                        "enrollment_id": enrollment.enrollment_id,
                        "idempotency_key": event.idempotency_key,
                    },
                )
                return ApplyResult(EventOutcome.DUPLICATE, enrollment)

            try:
                outcome, updated = transition(
                    enrollment, event, self._store.get_sequence(enrollment.campaign_id)
                )
            except ValidationError as exc:
                logger.error(
                    "Dropped invalid campaign event",
                    extra={
                        "enrollment_id": enrollment.enrollment_id,
                        "event_type": event.event_type.value,
                        "step_number": event.step_number,
                        "error": exc.message,
                    },
                )
                raise

            validate_enrollment_transition(
                enrollment.enrollment_id, enrollment.status, updated.status
            )
            if updated.current_step < enrollment.current_step:
                raise ValidationError(
                    "Enrollment step would decrease",
                    details={"enrollment_id": enrollment.enrollment_id},
                )

            if outcome.changed_state:
                self._store.commit_event(event, outcome, before=enrollment, after=updated)
            else:
                self._store.commit_event(event, outcome)
            result = ApplyResult(outcome, self._store.get(enrollment.enrollment_id))

        self._log_outcome(event, result)
        return result

    def pause(
        self,
        enrollment_id: str,
        *,
        operator: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Enrollment:
        """Freeze an active enrollment at its current step.

        Raises:
            InvalidStateTransitionError: If the enrollment is not active
        """
        return self._set_status(enrollment_id, EnrollmentStatus.PAUSED, operator, reason)

    def resume(
        self,
        enrollment_id: str,
        *,
        operator: Optional[str] = None,
    ) -> Enrollment:
        """Continue a paused enrollment from its current step."""
        return self._set_status(enrollment_id, EnrollmentStatus.ACTIVE, operator, None)

    def _set_status(
        self,
        enrollment_id: str,
        to_status: EnrollmentStatus,
        operator: Optional[str],
        reason: Optional[str],
    ) -> Enrollment:
        with self._store.record_lock(enrollment_id):
            enrollment = self._store.get(enrollment_id)
            if enrollment.status == to_status:
                raise InvalidStateTransitionError(
                    f"Enrollment {enrollment_id} is already {to_status.value}",
                    details={"enrollment_id": enrollment_id},
                )
            validate_enrollment_transition(enrollment_id, enrollment.status, to_status)

            updated = enrollment.copy(status=to_status)
            if to_status is EnrollmentStatus.PAUSED:
                updated.next_action_at = None
            else:
                # Next step is due immediately after a resume
                updated.next_action_at = self._store.now()
            enrollment = self._store.write(enrollment, updated)

        logger.info(
            "Enrollment paused" if to_status is EnrollmentStatus.PAUSED else "Enrollment resumed",
            extra={
                "enrollment_id": enrollment_id,
                "current_step": enrollment.current_step,
                "operator": operator,
            },
        )
        if self._audit:
            self._audit.record_action(
                source="campaigns",
                action="enrollment_paused"
                if to_status is EnrollmentStatus.PAUSED
                else "enrollment_resumed",
                subject_id=enrollment_id,
                operator=operator,
                metadata={"current_step": enrollment.current_step, "reason": reason},
            )
        return enrollment

    @staticmethod
    def _log_outcome(event: CampaignEvent, result: ApplyResult) -> None:
        extra = {
            "enrollment_id": event.enrollment_id,
            "event_type": event.event_type.value,
            "outcome": result.outcome.value,
            "current_step": result.enrollment.current_step,
            "status": result.enrollment.status.value,
        }
        if result.outcome is EventOutcome.TERMINATED:
            logger.info("Enrollment terminated", extra=extra)
        elif result.outcome is EventOutcome.OUT_OF_ORDER:
            logger.warning("Out-of-order sent event ignored", extra=extra)
        else:
            logger.debug("Applied campaign event", extra=extra)
