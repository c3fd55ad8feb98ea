"""Tests for enrollment persistence and compare-and-send reservations."""

from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import pytest

from salespilot.campaigns import (
    CampaignEvent,
    CampaignSequence,
    Channel,
    EnrollmentChannel,
    EnrollmentStateMachine,
    EnrollmentStatus,
    EnrollmentStore,
    EventType,
    SequenceStep,
)
from salespilot.errors import ClientError, EnrollmentNotFoundError


@pytest.fixture
def store(tmp_path: Path, wall_clock) -> EnrollmentStore:
    store = EnrollmentStore(tmp_path / "campaigns.db", clock=wall_clock)
    store.save_sequence(
        CampaignSequence(
            campaign_id="q2-outbound",
            steps=[
                SequenceStep(channel=Channel.EMAIL, delay_days=1),
                SequenceStep(channel=Channel.EMAIL, delay_days=3),
                SequenceStep(channel=Channel.EMAIL, delay_days=3),
            ],
        )
    )
    return store


def _sent(enrollment_id: str, step: int, when) -> CampaignEvent:
    return CampaignEvent(enrollment_id, EventType.SENT, Channel.EMAIL, when, step_number=step)


class TestSequences:
    def test_round_trip(self, store: EnrollmentStore):
        sequence = store.get_sequence("q2-outbound")
        assert sequence.total_steps == 3
        assert sequence.step(2).delay_days == 3

    def test_unknown_campaign(self, store: EnrollmentStore):
        with pytest.raises(ClientError):
            store.get_sequence("nope")

    def test_channel_compatibility(self, store: EnrollmentStore):
        with pytest.raises(ClientError):
            store.enroll("q2-outbound", "contact-1", EnrollmentChannel.LINKEDIN)

    def test_sequence_needs_steps(self):
        with pytest.raises(ValueError):
            CampaignSequence(campaign_id="empty", steps=[])


class TestEnroll:
    def test_new_enrollment(self, store: EnrollmentStore, wall_clock):
        enrollment, created = store.enroll("q2-outbound", "contact-1")

        assert created
        assert enrollment.status == EnrollmentStatus.ACTIVE
        assert enrollment.current_step == 0
        assert enrollment.total_steps == 3
        assert enrollment.next_step == 1
        assert enrollment.enrolled_at == wall_clock()
        assert enrollment.next_action_at == wall_clock() + timedelta(days=1)

    def test_enrolling_twice_returns_existing(self, store: EnrollmentStore):
        first, _ = store.enroll("q2-outbound", "contact-1")
        second, created = store.enroll("q2-outbound", "contact-1")

        assert not created
        assert second.enrollment_id == first.enrollment_id
        assert len(store.list_enrollments()) == 1

    def test_concurrent_enrolls_create_one_row(self, store: EnrollmentStore):
        ids = []

        def enroll() -> None:
            enrollment, _ = store.enroll("q2-outbound", "contact-1")
            ids.append(enrollment.enrollment_id)

        threads = [threading.Thread(target=enroll) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(set(ids)) == 1

    def test_get_unknown(self, store: EnrollmentStore):
        with pytest.raises(EnrollmentNotFoundError):
            store.get("missing")

    def test_list_and_counts(self, store: EnrollmentStore):
        a, _ = store.enroll("q2-outbound", "contact-1")
        store.enroll("q2-outbound", "contact-2")
        EnrollmentStateMachine(store).pause(a.enrollment_id)

        assert [e.contact_id for e in store.list_enrollments(status="paused")] == ["contact-1"]
        counts = store.counts_by_status("q2-outbound")
        assert counts["active"] == 1
        assert counts["paused"] == 1
        assert counts["completed"] == 0


class TestFollowups:
    def test_due_only_after_delay(self, store: EnrollmentStore, wall_clock):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        assert store.due_for_followup() == []

        wall_clock.advance(days=1)
        assert [e.enrollment_id for e in store.due_for_followup()] == [enrollment.enrollment_id]

    def test_reserved_and_paused_are_not_due(self, store: EnrollmentStore, wall_clock):
        reserved, _ = store.enroll("q2-outbound", "contact-1")
        paused, _ = store.enroll("q2-outbound", "contact-2")
        wall_clock.advance(days=2)

        assert store.reserve_send(reserved.enrollment_id, 1)
        EnrollmentStateMachine(store).pause(paused.enrollment_id)

        assert store.due_for_followup() == []


class TestCompareAndSend:
    def test_reserve_only_next_step(self, store: EnrollmentStore):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        assert not store.reserve_send(enrollment.enrollment_id, 2)
        assert store.reserve_send(enrollment.enrollment_id, 1)
        # Already in flight
        assert not store.reserve_send(enrollment.enrollment_id, 1)

    def test_unsubscribed_contact_cannot_be_reserved(self, store: EnrollmentStore, wall_clock):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        EnrollmentStateMachine(store).apply_event(
            CampaignEvent(
                enrollment.enrollment_id, EventType.UNSUBSCRIBED, Channel.EMAIL, wall_clock()
            )
        )
        assert not store.reserve_send(enrollment.enrollment_id, 1)

    def test_unsubscribe_clears_reservation(self, store: EnrollmentStore, wall_clock):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        store.reserve_send(enrollment.enrollment_id, 1)

        EnrollmentStateMachine(store).apply_event(
            CampaignEvent(
                enrollment.enrollment_id, EventType.UNSUBSCRIBED, Channel.EMAIL, wall_clock()
            )
        )
        current = store.get(enrollment.enrollment_id)
        assert current.status == EnrollmentStatus.UNSUBSCRIBED
        assert current.in_flight_step is None

    def test_sent_event_consumes_reservation(self, store: EnrollmentStore, wall_clock):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        store.reserve_send(enrollment.enrollment_id, 1)
        assert store.get(enrollment.enrollment_id).in_flight_step == 1

        EnrollmentStateMachine(store).apply_event(_sent(enrollment.enrollment_id, 1, wall_clock()))
        current = store.get(enrollment.enrollment_id)
        assert current.current_step == 1
        assert current.in_flight_step is None
        # Release after the advance is a no-op
        store.release_send(enrollment.enrollment_id, 1)
        assert store.reserve_send(enrollment.enrollment_id, 2)

    def test_release_after_failed_send(self, store: EnrollmentStore):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        store.reserve_send(enrollment.enrollment_id, 1)
        store.release_send(enrollment.enrollment_id, 1)

        assert store.get(enrollment.enrollment_id).in_flight_step is None
        assert store.reserve_send(enrollment.enrollment_id, 1)

    def test_stale_reservations_released(self, store: EnrollmentStore, wall_clock):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        store.reserve_send(enrollment.enrollment_id, 1)

        assert store.release_stale_reservations(timedelta(hours=1)) == 0
        wall_clock.advance(hours=2)
        assert store.release_stale_reservations(timedelta(hours=1)) == 1
        assert store.get(enrollment.enrollment_id).in_flight_step is None


class TestHistory:
    def test_events_in_arrival_order(self, store: EnrollmentStore, wall_clock):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        machine = EnrollmentStateMachine(store)
        machine.apply_event(_sent(enrollment.enrollment_id, 1, wall_clock()))
        wall_clock.advance(hours=1)
        machine.apply_event(
            CampaignEvent(
                enrollment.enrollment_id,
                EventType.OPENED,
                Channel.EMAIL,
                wall_clock(),
                metadata={"ip": "203.0.113.7"},
            )
        )

        history = store.events_for(enrollment.enrollment_id)
        assert [h.event.event_type for h in history] == [EventType.SENT, EventType.OPENED]
        assert history[0].event.step_number == 1
        assert history[1].event.metadata == {"ip": "203.0.113.7"}
        assert history[1].outcome.value == "engagement"
