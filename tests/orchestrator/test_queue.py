"""Tests for the persistent job queue."""

from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import pytest

from salespilot.errors import (
    ClientError,
    FailureReason,
    InvalidStateTransitionError,
    JobNotFoundError,
    QueueFullError,
)
from salespilot.orchestrator import JobPriority, JobQueue, JobStatus, JobType, KeyedLocks


@pytest.fixture
def queue(tmp_path: Path) -> JobQueue:
    return JobQueue(tmp_path / "queue.db", capacity=10)


def _claim_all(queue: JobQueue):
    claimed = []
    while (job := queue.claim_next()) is not None:
        claimed.append(job.job_id)
    return claimed


class TestEnqueue:
    def test_enqueue_returns_pending_job(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.DISCOVER, {"limit": 25})

        job = queue.get_status(job_id)
        assert job.status == JobStatus.PENDING
        assert job.job_type == JobType.DISCOVER
        assert job.payload == {"limit": 25}
        assert job.priority == JobPriority.NORMAL
        assert job.progress == 0.0
        assert job.created_at is not None
        assert job.created_at.tzinfo is not None

    def test_string_job_type_accepted(self, queue: JobQueue):
        job_id = queue.enqueue("custom-workflow", {"workflow": "nurture"}, "high")
        job = queue.get_status(job_id)
        assert job.job_type == JobType.CUSTOM_WORKFLOW
        assert job.priority == JobPriority.HIGH

    def test_unknown_job_type_is_client_error(self, queue: JobQueue):
        with pytest.raises(ClientError):
            queue.enqueue("teleport", {})

    def test_payload_must_be_json(self, queue: JobQueue):
        with pytest.raises(ClientError):
            queue.enqueue(JobType.SYNC, {"contact": object()})

    def test_capacity_counts_pending_and_running(self, tmp_path: Path):
        queue = JobQueue(tmp_path / "queue.db", capacity=2)
        first = queue.enqueue(JobType.SYNC)
        queue.enqueue(JobType.SYNC)
        queue.claim_next()

        with pytest.raises(QueueFullError):
            queue.enqueue(JobType.SYNC)

        queue.complete(first)
        queue.enqueue(JobType.SYNC)
        assert queue.active_count() == 2

    def test_capacity_enforced_under_concurrency(self, tmp_path: Path):
        queue = JobQueue(tmp_path / "queue.db", capacity=5)
        accepted = []
        rejected = []

        def submit() -> None:
            try:
                accepted.append(queue.enqueue(JobType.ENRICH))
            except QueueFullError:
                rejected.append(1)

        threads = [threading.Thread(target=submit) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(accepted) == 5
        assert len(rejected) == 15

    def test_get_status_unknown_job(self, queue: JobQueue):
        with pytest.raises(JobNotFoundError):
            queue.get_status("missing")


class TestDequeueOrder:
    def test_high_priority_first_then_fifo(self, queue: JobQueue):
        n1 = queue.enqueue(JobType.ENRICH, {"n": 1})
        n2 = queue.enqueue(JobType.ENRICH, {"n": 2})
        h1 = queue.enqueue(JobType.SYNC, {"h": 1}, JobPriority.HIGH)
        n3 = queue.enqueue(JobType.ENRICH, {"n": 3})
        h2 = queue.enqueue(JobType.SYNC, {"h": 2}, JobPriority.HIGH)

        assert _claim_all(queue) == [h1, h2, n1, n2, n3]

    def test_claim_marks_running(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.OUTREACH)
        job = queue.claim_next()

        assert job.job_id == job_id
        assert job.status == JobStatus.RUNNING
        assert job.started_at is not None
        assert queue.claim_next() is None

    def test_running_job_is_not_preempted(self, queue: JobQueue):
        normal = queue.enqueue(JobType.ENRICH)
        queue.claim_next()
        queue.enqueue(JobType.SYNC, priority=JobPriority.HIGH)

        assert queue.get_status(normal).status == JobStatus.RUNNING

    def test_concurrent_claims_never_share_a_job(self, queue: JobQueue):
        for _ in range(10):
            queue.enqueue(JobType.ENRICH)
        claimed = []
        lock = threading.Lock()

        def worker() -> None:
            while (job := queue.claim_next()) is not None:
                with lock:
                    claimed.append(job.job_id)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(claimed) == 10
        assert len(set(claimed)) == 10


class TestTransitions:
    def test_complete(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.DISCOVER)
        queue.claim_next()
        queue.update_progress(job_id, 0.5)
        assert queue.get_status(job_id).progress == 0.5

        job = queue.complete(job_id, {"candidates": 3})
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 1.0
        assert job.result == {"candidates": 3}
        assert job.completed_at is not None
        assert job.duration_seconds is not None

    def test_progress_is_clamped(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.DISCOVER)
        queue.claim_next()
        assert queue.update_progress(job_id, 3).progress == 1.0
        assert queue.update_progress(job_id, -1).progress == 0.0

    def test_fail_records_error_and_reason(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.SYNC)
        queue.claim_next()

        job = queue.fail(job_id, "Circuit 'hubspot' is open", FailureReason.CIRCUIT_OPEN)
        assert job.status == JobStatus.FAILED
        assert job.reason == FailureReason.CIRCUIT_OPEN
        assert job.error == "Circuit 'hubspot' is open"

    def test_terminal_states_are_final(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.SYNC)
        queue.claim_next()
        queue.complete(job_id)

        with pytest.raises(InvalidStateTransitionError):
            queue.fail(job_id, "late", FailureReason.TRANSIENT)
        with pytest.raises(InvalidStateTransitionError):
            queue.update_progress(job_id, 0.2)
        assert queue.get_status(job_id).status == JobStatus.COMPLETED

    def test_pending_cannot_complete(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.SYNC)
        with pytest.raises(InvalidStateTransitionError):
            queue.complete(job_id)


class TestCancel:
    def test_cancel_pending_is_immediate(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.DISCOVER)

        job = queue.cancel(job_id)
        assert job.status == JobStatus.CANCELLED
        assert queue.claim_next() is None

    def test_cancel_running_sets_flag(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.DISCOVER)
        queue.claim_next()

        job = queue.cancel(job_id)
        assert job.status == JobStatus.RUNNING
        assert job.cancel_requested
        assert queue.is_cancel_requested(job_id)

        assert queue.mark_cancelled(job_id).status == JobStatus.CANCELLED

    def test_cancel_finished_job_is_noop(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.DISCOVER)
        queue.claim_next()
        queue.complete(job_id)

        job = queue.cancel(job_id)
        assert job.status == JobStatus.COMPLETED
        assert not job.cancel_requested

    def test_cancel_unknown(self, queue: JobQueue):
        with pytest.raises(JobNotFoundError):
            queue.cancel("nope")


class TestMaintenance:
    def test_requeue_creates_new_job(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.SYNC, {"contact_id": "c-1"}, JobPriority.HIGH)
        queue.claim_next()
        queue.fail(job_id, "boom", FailureReason.TRANSIENT)

        new_id = queue.requeue(job_id)

        assert new_id != job_id
        new_job = queue.get_status(new_id)
        assert new_job.status == JobStatus.PENDING
        assert new_job.payload == {"contact_id": "c-1"}
        assert new_job.priority == JobPriority.HIGH
        assert new_job.requeued_from == job_id
        assert queue.get_status(job_id).status == JobStatus.FAILED

    def test_requeue_active_job_rejected(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.SYNC)
        with pytest.raises(InvalidStateTransitionError):
            queue.requeue(job_id)

    def test_cleanup_removes_old_finished_jobs(self, tmp_path: Path, wall_clock):
        queue = JobQueue(tmp_path / "queue.db", clock=wall_clock)
        old = queue.enqueue(JobType.SYNC)
        queue.claim_next()
        queue.complete(old)
        pending = queue.enqueue(JobType.SYNC)

        wall_clock.advance(days=91)
        recent = queue.enqueue(JobType.SYNC)
        queue.cancel(recent)

        assert queue.cleanup(days_to_keep=90) == 1
        with pytest.raises(JobNotFoundError):
            queue.get_status(old)
        assert queue.get_status(pending).status == JobStatus.PENDING
        assert queue.get_status(recent).status == JobStatus.CANCELLED

    def test_recover_interrupted(self, tmp_path: Path):
        path = tmp_path / "queue.db"
        first = JobQueue(path)
        job_id = first.enqueue(JobType.ENRICH)
        first.claim_next()
        first.close()

        second = JobQueue(path)
        assert second.recover_interrupted() == [job_id]
        job = second.get_status(job_id)
        assert job.status == JobStatus.FAILED
        assert job.reason == FailureReason.TRANSIENT

    def test_list_and_stats(self, queue: JobQueue):
        a = queue.enqueue(JobType.DISCOVER)
        queue.enqueue(JobType.ENRICH, priority=JobPriority.HIGH)
        queue.enqueue(JobType.ENRICH)
        queue.claim_next()  # high-priority enrich

        assert len(queue.list_jobs()) == 3
        assert [j.job_id for j in queue.list_jobs(job_type=JobType.DISCOVER)] == [a]
        assert len(queue.list_jobs(status=JobStatus.RUNNING)) == 1

        stats = queue.stats()
        assert stats["total"] == 3
        assert stats["by_status"]["pending"] == 2
        assert stats["by_status"]["running"] == 1
        assert stats["by_type"] == {"discover": 1, "enrich": 2}
        assert stats["pending_by_priority"] == {"normal": 2, "high": 0}
        assert stats["active"] == 3
        assert stats["capacity"] == 10

    @pytest.mark.asyncio
    async def test_wait_for_returns_terminal_snapshot(self, queue: JobQueue):
        job_id = queue.enqueue(JobType.DISCOVER)
        queue.cancel(job_id)

        job = await queue.wait_for(job_id, timeout=1)
        assert job.status == JobStatus.CANCELLED


class TestKeyedLocks:
    def test_entries_released_when_idle(self):
        locks = KeyedLocks()
        with locks.hold("job-1"):
            with locks.hold("job-2"):
                assert len(locks) == 2
        assert len(locks) == 0

    def test_same_key_is_exclusive(self):
        locks = KeyedLocks()
        inside = []
        overlaps = []

        def critical() -> None:
            for _ in range(200):
                with locks.hold("enrollment-1"):
                    inside.append(1)
                    if len(inside) > 1:
                        overlaps.append(1)
                    inside.pop()

        threads = [threading.Thread(target=critical) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []
