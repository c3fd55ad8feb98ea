"""Tests for the single-consumer campaign event inbox."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path

import pytest

from salespilot.campaigns import (
    ORPHAN_RETRY_DELAYS,
    CampaignEvent,
    CampaignSequence,
    Channel,
    EnrollmentStateMachine,
    EnrollmentStatus,
    EnrollmentStore,
    EventInbox,
    EventType,
    SequenceStep,
)


@pytest.fixture
def store(tmp_path: Path, wall_clock) -> EnrollmentStore:
    store = EnrollmentStore(tmp_path / "campaigns.db", clock=wall_clock)
    store.save_sequence(
        CampaignSequence(
            campaign_id="q2-outbound",
            steps=[SequenceStep(channel=Channel.EMAIL) for _ in range(3)],
        )
    )
    return store


@pytest.fixture
def inbox(store: EnrollmentStore, clock) -> EventInbox:
    return EventInbox(EnrollmentStateMachine(store), clock=clock, tick_seconds=0.01)


class FlakyMachine(EnrollmentStateMachine):
    """Fails the first event of one type with a storage error."""

    def __init__(self, store: EnrollmentStore, fail_on: EventType) -> None:
        super().__init__(store)
        self.fail_on = fail_on
        self.failures = 0

    def apply_event(self, event):
        if event.event_type is self.fail_on and not self.failures:
            self.failures += 1
            raise sqlite3.OperationalError("database is locked")
        return super().apply_event(event)


def _event(enrollment_id, event_type, wall_clock, step=None):
    wall_clock.advance(seconds=30)
    return CampaignEvent(
        enrollment_id, event_type, Channel.EMAIL, wall_clock(), step_number=step
    )


class TestProcessing:
    def test_applies_in_order(self, inbox: EventInbox, store: EnrollmentStore, wall_clock):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        for step in (1, 2):
            inbox.process(_event(enrollment.enrollment_id, EventType.SENT, wall_clock, step))

        assert store.get(enrollment.enrollment_id).current_step == 2
        assert inbox.stats.applied == 2

    def test_duplicates_counted(self, inbox: EventInbox, store: EnrollmentStore, wall_clock):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        event = _event(enrollment.enrollment_id, EventType.OPENED, wall_clock)
        inbox.process(event)
        inbox.process(event)

        assert inbox.stats.applied == 1
        assert inbox.stats.duplicates == 1
        assert store.get(enrollment.enrollment_id).engagement.opened == 1

    def test_invalid_event_rejected_without_state_change(
        self, inbox: EventInbox, store: EnrollmentStore, wall_clock
    ):
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        assert inbox.process(_event(enrollment.enrollment_id, EventType.SENT, wall_clock)) is None
        assert inbox.stats.rejected == 1
        assert store.get(enrollment.enrollment_id).current_step == 0


class TestOrphans:
    def test_orphan_applied_once_enrollment_exists(
        self, inbox: EventInbox, store: EnrollmentStore, wall_clock, clock
    ):
        inbox.process(_event("enr-42", EventType.OPENED, wall_clock))
        assert inbox.orphan_count == 1

        # Not due yet
        assert inbox.retry_orphans() == 0

        store.enroll("q2-outbound", "contact-1", enrollment_id="enr-42")
        clock.advance(ORPHAN_RETRY_DELAYS[0])
        assert inbox.retry_orphans() == 1
        assert inbox.orphan_count == 0
        assert store.get("enr-42").engagement.opened == 1

    def test_later_events_queue_behind_orphans(self, inbox: EventInbox, wall_clock):
        inbox.process(_event("ghost", EventType.SENT, wall_clock, 1))
        inbox.process(_event("ghost", EventType.OPENED, wall_clock))

        assert inbox.orphan_count == 2
        assert inbox.stats.orphaned == 2

    def test_dead_lettered_after_last_retry(self, inbox: EventInbox, wall_clock, clock):
        inbox.process(_event("ghost", EventType.OPENED, wall_clock))

        for delay in ORPHAN_RETRY_DELAYS:
            clock.advance(delay)
            inbox.retry_orphans()

        assert inbox.orphan_count == 0
        assert len(inbox.dead_letters) == 1
        dead = inbox.dead_letters[0]
        assert dead.enrollment_id == "ghost"
        assert dead.attempts == len(ORPHAN_RETRY_DELAYS)
        assert inbox.stats.dead_lettered == 1

    def test_still_parked_before_final_retry(self, inbox: EventInbox, wall_clock, clock):
        inbox.process(_event("ghost", EventType.OPENED, wall_clock))
        for delay in ORPHAN_RETRY_DELAYS[:-1]:
            clock.advance(delay)
            inbox.retry_orphans()

        assert inbox.orphan_count == 1
        assert inbox.dead_letters == []

    def test_failed_release_keeps_remaining_events(
        self, store: EnrollmentStore, wall_clock, clock
    ):
        inbox = EventInbox(FlakyMachine(store, EventType.OPENED), clock=clock)
        inbox.process(_event("enr-42", EventType.SENT, wall_clock, 1))
        inbox.process(_event("enr-42", EventType.OPENED, wall_clock))
        inbox.process(_event("enr-42", EventType.SENT, wall_clock, 2))
        store.enroll("q2-outbound", "contact-1", enrollment_id="enr-42")

        clock.advance(ORPHAN_RETRY_DELAYS[0])
        assert inbox.retry_orphans() == 1
        assert inbox.orphan_count == 2
        assert store.get("enr-42").current_step == 1

        # Not retried before the next backoff step
        assert inbox.retry_orphans() == 0
        clock.advance(ORPHAN_RETRY_DELAYS[1])
        assert inbox.retry_orphans() == 2
        assert inbox.orphan_count == 0
        current = store.get("enr-42")
        assert current.current_step == 2
        assert current.engagement.opened == 1

    def test_dead_letters_bounded(self, store: EnrollmentStore, wall_clock, clock):
        inbox = EventInbox(
            EnrollmentStateMachine(store), retry_delays=(1,), clock=clock, max_dead_letters=2
        )
        for n in (1, 2, 3):
            inbox.process(_event(f"ghost-{n}", EventType.OPENED, wall_clock))

        clock.advance(1)
        inbox.retry_orphans()

        assert [dead.enrollment_id for dead in inbox.dead_letters] == ["ghost-2", "ghost-3"]
        assert inbox.stats.dead_lettered == 3


class TestConsumer:
    @pytest.mark.asyncio
    async def test_consumer_drains_queue(self, store: EnrollmentStore, wall_clock):
        inbox = EventInbox(EnrollmentStateMachine(store), tick_seconds=0.01)
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        inbox.start()
        try:
            for step in (1, 2, 3):
                await inbox.put(_event(enrollment.enrollment_id, EventType.SENT, wall_clock, step))
            await asyncio.wait_for(inbox.join(), timeout=2)
        finally:
            await inbox.stop()

        current = store.get(enrollment.enrollment_id)
        assert current.current_step == 3
        assert current.status == EnrollmentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_consumer_survives_storage_error(self, store: EnrollmentStore, wall_clock):
        inbox = EventInbox(FlakyMachine(store, EventType.OPENED), tick_seconds=0.01)
        enrollment, _ = store.enroll("q2-outbound", "contact-1")
        inbox.start()
        try:
            await inbox.put(_event(enrollment.enrollment_id, EventType.OPENED, wall_clock))
            await inbox.put(_event(enrollment.enrollment_id, EventType.SENT, wall_clock, 1))
            await asyncio.wait_for(inbox.join(), timeout=2)
            await inbox.put(_event(enrollment.enrollment_id, EventType.SENT, wall_clock, 2))
            await asyncio.wait_for(inbox.join(), timeout=2)
        finally:
            await inbox.stop()

        assert inbox.stats.failed == 1
        assert store.get(enrollment.enrollment_id).current_step == 2
