"""Tests for campaign enrollment event application."""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from salespilot.audit import AuditLogger
from salespilot.campaigns import (
    CampaignEvent,
    CampaignSequence,
    Channel,
    EnrollmentChannel,
    EnrollmentStateMachine,
    EnrollmentStatus,
    EnrollmentStore,
    EventOutcome,
    EventType,
    SequenceStep,
)
from salespilot.errors import (
    ClientError,
    EnrollmentNotFoundError,
    InvalidStateTransitionError,
    ValidationError,
)


@pytest.fixture
def store(tmp_path: Path, wall_clock) -> EnrollmentStore:
    store = EnrollmentStore(tmp_path / "campaigns.db", clock=wall_clock)
    store.save_sequence(
        CampaignSequence(
            campaign_id="q2-outbound",
            steps=[
                SequenceStep(channel=Channel.EMAIL),
                SequenceStep(channel=Channel.EMAIL, delay_days=2),
                SequenceStep(channel=Channel.EMAIL, delay_days=3),
                SequenceStep(channel=Channel.EMAIL, delay_days=3),
                SequenceStep(channel=Channel.EMAIL, delay_days=5),
            ],
        )
    )
    return store


@pytest.fixture
def machine(store: EnrollmentStore) -> EnrollmentStateMachine:
    return EnrollmentStateMachine(store)


@pytest.fixture
def enrollment_id(store: EnrollmentStore) -> str:
    enrollment, _ = store.enroll("q2-outbound", "contact-1")
    return enrollment.enrollment_id


class Events:
    """Builds events with strictly increasing timestamps."""

    def __init__(self, wall_clock) -> None:
        self._clock = wall_clock

    def __call__(self, enrollment_id, event_type, step=None, channel=Channel.EMAIL, **metadata):
        self._clock.advance(minutes=1)
        return CampaignEvent(
            enrollment_id=enrollment_id,
            event_type=event_type,
            channel=channel,
            timestamp=self._clock(),
            step_number=step,
            metadata=metadata,
        )


@pytest.fixture
def event(wall_clock) -> Events:
    return Events(wall_clock)


def _send_steps(machine, event, enrollment_id, steps):
    for step in steps:
        machine.apply_event(event(enrollment_id, EventType.SENT, step))


class TestStepProgression:
    def test_sent_for_next_step_advances(self, machine, event, enrollment_id, wall_clock):
        result = machine.apply_event(event(enrollment_id, EventType.SENT, 1))

        assert result.outcome == EventOutcome.ADVANCED
        assert result.enrollment.current_step == 1
        assert result.enrollment.engagement.sent == 1
        assert result.enrollment.last_event_at == wall_clock()
        assert result.enrollment.next_action_at == wall_clock() + timedelta(days=2)

    def test_last_step_completes(self, machine, event, enrollment_id):
        _send_steps(machine, event, enrollment_id, range(1, 5))
        result = machine.apply_event(event(enrollment_id, EventType.SENT, 5))

        assert result.outcome == EventOutcome.COMPLETED
        assert result.enrollment.status == EnrollmentStatus.COMPLETED
        assert result.enrollment.current_step == result.enrollment.total_steps == 5
        assert result.enrollment.completed_at is not None
        assert result.enrollment.next_action_at is None

    def test_out_of_order_advances_only_on_next_step(self, machine, event, enrollment_id):
        _send_steps(machine, event, enrollment_id, [1, 2])

        early = machine.apply_event(event(enrollment_id, EventType.SENT, 4))
        assert early.outcome == EventOutcome.OUT_OF_ORDER
        assert early.enrollment.current_step == 2

        expected = machine.apply_event(event(enrollment_id, EventType.SENT, 3))
        assert expected.enrollment.current_step == 3

    def test_stale_redelivery_never_rewinds(self, machine, event, enrollment_id):
        _send_steps(machine, event, enrollment_id, [1, 2, 3])

        result = machine.apply_event(event(enrollment_id, EventType.SENT, 1))
        assert result.outcome == EventOutcome.OUT_OF_ORDER
        assert result.enrollment.current_step == 3

    def test_step_never_exceeds_total_or_decreases(self, machine, event, enrollment_id, store):
        observed = []
        for step in [1, 3, 2, 2, 7, 5, 4, 3, 5, 4, 5, 1]:
            try:
                machine.apply_event(event(enrollment_id, EventType.SENT, step))
            except ValidationError:
                pass
            observed.append(store.get(enrollment_id).current_step)

        assert observed == sorted(observed)
        assert max(observed) <= 5
        assert observed[-1] == 5

    def test_sent_without_step_is_dropped(self, machine, event, enrollment_id, store):
        with pytest.raises(ValidationError):
            machine.apply_event(event(enrollment_id, EventType.SENT))
        assert store.get(enrollment_id).current_step == 0
        assert store.events_for(enrollment_id) == []

    def test_sent_past_total_steps_is_dropped(self, machine, event, enrollment_id, store):
        with pytest.raises(ValidationError):
            machine.apply_event(event(enrollment_id, EventType.SENT, 6))
        assert store.get(enrollment_id).current_step == 0

    def test_sent_on_disallowed_channel_is_dropped(self, machine, event, enrollment_id):
        with pytest.raises(ValidationError):
            machine.apply_event(event(enrollment_id, EventType.SENT, 1, channel=Channel.LINKEDIN))

    def test_unknown_enrollment(self, machine, event):
        with pytest.raises(EnrollmentNotFoundError):
            machine.apply_event(event("missing", EventType.OPENED))


class TestIdempotence:
    def test_same_event_twice_equals_once(self, machine, event, enrollment_id, store):
        sent = event(enrollment_id, EventType.SENT, 1)
        opened = event(enrollment_id, EventType.OPENED)

        machine.apply_event(sent)
        machine.apply_event(opened)
        once = store.get(enrollment_id)

        assert machine.apply_event(sent).outcome == EventOutcome.DUPLICATE
        assert machine.apply_event(opened).outcome == EventOutcome.DUPLICATE
        assert store.get(enrollment_id) == once
        assert once.engagement.opened == 1
        assert len(store.events_for(enrollment_id)) == 2

    def test_key_uses_utc_timestamp(self, enrollment_id, wall_clock):
        from datetime import timezone as tz

        local = wall_clock().astimezone(tz(timedelta(hours=2)))
        a = CampaignEvent(enrollment_id, EventType.OPENED, Channel.EMAIL, wall_clock())
        b = CampaignEvent(enrollment_id, EventType.OPENED, Channel.EMAIL, local)
        assert a.idempotency_key == b.idempotency_key

    def test_same_timestamp_other_channel_is_distinct(self, enrollment_id, wall_clock):
        a = CampaignEvent(enrollment_id, EventType.OPENED, Channel.EMAIL, wall_clock())
        b = CampaignEvent(enrollment_id, EventType.OPENED, Channel.LINKEDIN, wall_clock())
        assert a.idempotency_key != b.idempotency_key

    def test_naive_timestamp_rejected(self, enrollment_id):
        from datetime import datetime

        with pytest.raises(ClientError):
            CampaignEvent(enrollment_id, EventType.OPENED, Channel.EMAIL, datetime(2025, 1, 1))


class TestTermination:
    def test_unsubscribe_at_step_two_then_sent_three_ignored(
        self, machine, event, enrollment_id, store
    ):
        _send_steps(machine, event, enrollment_id, [1, 2])

        result = machine.apply_event(event(enrollment_id, EventType.UNSUBSCRIBED))
        assert result.outcome == EventOutcome.TERMINATED
        assert result.enrollment.status == EnrollmentStatus.UNSUBSCRIBED
        assert result.enrollment.current_step == 2

        late = machine.apply_event(event(enrollment_id, EventType.SENT, 3))
        assert late.outcome == EventOutcome.IGNORED_TERMINAL
        enrollment = store.get(enrollment_id)
        assert enrollment.status == EnrollmentStatus.UNSUBSCRIBED
        assert enrollment.current_step == 2
        # Still recorded for analytics
        assert store.events_for(enrollment_id)[-1].outcome == EventOutcome.IGNORED_TERMINAL

    def test_hard_bounce_is_terminal(self, machine, event, enrollment_id):
        result = machine.apply_event(event(enrollment_id, EventType.BOUNCED, bounce_type="hard"))
        assert result.enrollment.status == EnrollmentStatus.BOUNCED
        assert result.enrollment.terminated_at is not None

    def test_bounce_without_type_is_hard(self, machine, event, enrollment_id):
        result = machine.apply_event(event(enrollment_id, EventType.BOUNCED))
        assert result.enrollment.status == EnrollmentStatus.BOUNCED

    def test_soft_bounce_only_counts(self, machine, event, enrollment_id):
        result = machine.apply_event(event(enrollment_id, EventType.BOUNCED, bounce_type="soft"))
        assert result.outcome == EventOutcome.ENGAGEMENT
        assert result.enrollment.status == EnrollmentStatus.ACTIVE
        assert result.enrollment.engagement.soft_bounced == 1

    def test_engagement_never_moves_step(self, machine, event, enrollment_id):
        machine.apply_event(event(enrollment_id, EventType.SENT, 1))
        for event_type in (EventType.OPENED, EventType.CLICKED, EventType.REPLIED):
            result = machine.apply_event(event(enrollment_id, event_type))
            assert result.enrollment.current_step == 1
        engagement = result.enrollment.engagement
        assert (engagement.opened, engagement.clicked, engagement.replied) == (1, 1, 1)

    def test_completed_ignores_unsubscribe(self, machine, event, enrollment_id):
        _send_steps(machine, event, enrollment_id, range(1, 6))
        result = machine.apply_event(event(enrollment_id, EventType.UNSUBSCRIBED))
        assert result.outcome == EventOutcome.IGNORED_TERMINAL
        assert result.enrollment.status == EnrollmentStatus.COMPLETED


class TestPauseResume:
    def test_pause_freezes_step(self, machine, event, enrollment_id):
        machine.apply_event(event(enrollment_id, EventType.SENT, 1))
        paused = machine.pause(enrollment_id, operator="ops@example.com")
        assert paused.status == EnrollmentStatus.PAUSED
        assert paused.next_action_at is None

        result = machine.apply_event(event(enrollment_id, EventType.SENT, 2))
        assert result.outcome == EventOutcome.NOT_ACTIVE
        assert result.enrollment.current_step == 1

    def test_paused_enrollment_still_counts_engagement(self, machine, event, enrollment_id):
        machine.pause(enrollment_id)
        result = machine.apply_event(event(enrollment_id, EventType.OPENED))
        assert result.enrollment.engagement.opened == 1
        assert result.enrollment.status == EnrollmentStatus.PAUSED

    def test_paused_can_unsubscribe(self, machine, event, enrollment_id):
        machine.pause(enrollment_id)
        result = machine.apply_event(event(enrollment_id, EventType.UNSUBSCRIBED))
        assert result.enrollment.status == EnrollmentStatus.UNSUBSCRIBED

    def test_resume_continues_from_current_step(self, machine, event, enrollment_id, wall_clock):
        _send_steps(machine, event, enrollment_id, [1, 2])
        machine.pause(enrollment_id)

        resumed = machine.resume(enrollment_id)
        assert resumed.status == EnrollmentStatus.ACTIVE
        assert resumed.current_step == 2
        assert resumed.next_action_at == wall_clock()

        result = machine.apply_event(event(enrollment_id, EventType.SENT, 3))
        assert result.enrollment.current_step == 3

    def test_invalid_pause_resume(self, machine, event, enrollment_id):
        with pytest.raises(InvalidStateTransitionError):
            machine.resume(enrollment_id)
        machine.apply_event(event(enrollment_id, EventType.UNSUBSCRIBED))
        with pytest.raises(InvalidStateTransitionError):
            machine.pause(enrollment_id)

    def test_pause_and_resume_are_audited(self, store, event, enrollment_id, tmp_path: Path):
        audit = AuditLogger(tmp_path / "audit")
        machine = EnrollmentStateMachine(store, audit)
        machine.pause(enrollment_id, operator="ops@example.com", reason="customer asked")
        machine.resume(enrollment_id, operator="ops@example.com")

        actions = [entry["action"] for entry in audit.iter_events()]
        assert actions == ["enrollment_paused", "enrollment_resumed"]


class TestStopOnReply:
    def test_reply_pauses_when_enabled(self, store, event):
        store.save_sequence(
            CampaignSequence(
                campaign_id="warm",
                steps=[SequenceStep(channel=Channel.EMAIL), SequenceStep(channel=Channel.LINKEDIN)],
                stop_on_reply=True,
            )
        )
        enrollment, _ = store.enroll("warm", "contact-9", EnrollmentChannel.BOTH)
        machine = EnrollmentStateMachine(store)
        machine.apply_event(event(enrollment.enrollment_id, EventType.SENT, 1))

        result = machine.apply_event(
            event(enrollment.enrollment_id, EventType.REPLIED, channel=Channel.EMAIL)
        )
        assert result.outcome == EventOutcome.PAUSED
        assert result.enrollment.status == EnrollmentStatus.PAUSED
        assert result.enrollment.current_step == 1

    def test_reply_does_not_pause_by_default(self, machine, event, enrollment_id):
        result = machine.apply_event(event(enrollment_id, EventType.REPLIED))
        assert result.enrollment.status == EnrollmentStatus.ACTIVE
