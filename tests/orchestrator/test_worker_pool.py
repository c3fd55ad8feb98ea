"""Tests for the asyncio worker pool."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from salespilot.errors import (
    CircuitOpenError,
    ClientError,
    FailureReason,
    TransientError,
    ValidationError,
)
from salespilot.orchestrator import (
    JobContext,
    JobPriority,
    JobQueue,
    JobStatus,
    JobType,
    TelemetryRecorder,
    WorkerPool,
)
from salespilot.orchestrator.state_machine import VALID_TRANSITIONS


@pytest.fixture
def queue(tmp_path: Path) -> JobQueue:
    return JobQueue(tmp_path / "queue.db")


def _pool(queue: JobQueue, **kwargs) -> WorkerPool:
    kwargs.setdefault("poll_interval", 0.01)
    return WorkerPool(queue, **kwargs)


@pytest.mark.asyncio
async def test_jobs_dispatched_to_registered_handler(queue: JobQueue) -> None:
    pool = _pool(queue)
    seen = []

    async def discover(ctx: JobContext):
        seen.append(ctx.payload["limit"])
        ctx.report_progress(0.5)
        return {"candidates": ["c-1", "c-2"]}

    pool.register(JobType.DISCOVER, discover)
    pool.start()
    try:
        job_id = pool.submit(JobType.DISCOVER, {"limit": 2})
        job = await queue.wait_for(job_id, timeout=2)
    finally:
        await pool.shutdown()

    assert seen == [2]
    assert job.status == JobStatus.COMPLETED
    assert job.result == {"candidates": ["c-1", "c-2"]}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, reason",
    [
        (CircuitOpenError("hubspot"), FailureReason.CIRCUIT_OPEN),
        (ClientError("invalid payload"), FailureReason.CLIENT),
        (ValidationError("step overflow"), FailureReason.VALIDATION),
        (TransientError("503"), FailureReason.TRANSIENT),
        (RuntimeError("unexpected"), FailureReason.TRANSIENT),
    ],
)
async def test_failures_are_classified(queue: JobQueue, error, reason) -> None:
    pool = _pool(queue)

    async def handler(ctx: JobContext):
        raise error

    pool.register(JobType.SYNC, handler)
    pool.start()
    try:
        job_id = pool.submit(JobType.SYNC, {})
        job = await queue.wait_for(job_id, timeout=2)
    finally:
        await pool.shutdown()

    assert job.status == JobStatus.FAILED
    assert job.reason == reason
    assert job.error == str(error)
    # Never re-enqueued automatically
    assert len(queue.list_jobs()) == 1


@pytest.mark.asyncio
async def test_one_failure_does_not_affect_other_jobs(queue: JobQueue) -> None:
    pool = _pool(queue)

    async def handler(ctx: JobContext):
        if ctx.payload["n"] == 2:
            raise TransientError("boom")
        return {"n": ctx.payload["n"]}

    pool.register(JobType.ENRICH, handler)
    pool.start()
    try:
        ids = [pool.submit(JobType.ENRICH, {"n": n}) for n in range(5)]
        jobs = [await queue.wait_for(job_id, timeout=2) for job_id in ids]
    finally:
        await pool.shutdown()

    assert [job.status for job in jobs] == [
        JobStatus.COMPLETED,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.COMPLETED,
        JobStatus.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_unregistered_job_type_fails_as_client_error(queue: JobQueue) -> None:
    pool = _pool(queue)
    pool.start()
    try:
        job_id = pool.submit(JobType.OUTREACH, {})
        job = await queue.wait_for(job_id, timeout=2)
    finally:
        await pool.shutdown()

    assert job.status == JobStatus.FAILED
    assert job.reason == FailureReason.CLIENT


@pytest.mark.asyncio
async def test_concurrency_bounded_by_max_workers(queue: JobQueue) -> None:
    pool = _pool(queue, max_workers=2)
    running = 0
    peak = 0

    async def handler(ctx: JobContext):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        return None

    pool.register(JobType.ENRICH, handler)
    pool.start()
    try:
        for _ in range(6):
            pool.submit(JobType.ENRICH, {})
        await pool.drain(timeout=5)
    finally:
        await pool.shutdown()

    assert peak == 2
    assert queue.stats()["by_status"]["completed"] == 6


@pytest.mark.asyncio
async def test_high_priority_runs_before_normal(queue: JobQueue) -> None:
    order = []

    async def handler(ctx: JobContext):
        order.append(ctx.payload["name"])

    queue.enqueue(JobType.ENRICH, {"name": "normal-1"})
    queue.enqueue(JobType.ENRICH, {"name": "normal-2"})
    queue.enqueue(JobType.ENRICH, {"name": "urgent"}, JobPriority.HIGH)

    pool = _pool(queue, max_workers=1)
    pool.register(JobType.ENRICH, handler)
    pool.start()
    try:
        await pool.drain(timeout=5)
    finally:
        await pool.shutdown()

    assert order == ["urgent", "normal-1", "normal-2"]


@pytest.mark.asyncio
async def test_running_job_cancelled_at_next_checkpoint(queue: JobQueue) -> None:
    pool = _pool(queue)
    started = asyncio.Event()
    release = asyncio.Event()
    calls = []

    async def handler(ctx: JobContext):
        calls.append("first")
        started.set()
        await release.wait()
        ctx.checkpoint()
        calls.append("second")
        return None

    pool.register(JobType.OUTREACH, handler)
    pool.start()
    try:
        job_id = pool.submit(JobType.OUTREACH, {})
        await started.wait()
        assert queue.cancel(job_id).status == JobStatus.RUNNING
        release.set()
        job = await queue.wait_for(job_id, timeout=2)
    finally:
        await pool.shutdown()

    assert job.status == JobStatus.CANCELLED
    assert calls == ["first"]


@pytest.mark.asyncio
async def test_job_past_last_checkpoint_finishes(queue: JobQueue) -> None:
    pool = _pool(queue)
    started = asyncio.Event()
    release = asyncio.Event()

    async def handler(ctx: JobContext):
        ctx.checkpoint()
        started.set()
        await release.wait()
        return {"sent": True}

    pool.register(JobType.OUTREACH, handler)
    pool.start()
    try:
        job_id = pool.submit(JobType.OUTREACH, {})
        await started.wait()
        queue.cancel(job_id)
        release.set()
        job = await queue.wait_for(job_id, timeout=2)
    finally:
        await pool.shutdown()

    assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_status_order_never_violated(queue: JobQueue) -> None:
    """Every recorded transition is allowed and no job ends in two terminal states."""
    pool = _pool(queue, max_workers=3)

    async def handler(ctx: JobContext):
        await asyncio.sleep(0)
        if ctx.payload["n"] % 3 == 0:
            raise TransientError("flaky")
        ctx.checkpoint()
        return None

    pool.register(JobType.ENRICH, handler)
    ids = [queue.enqueue(JobType.ENRICH, {"n": n}) for n in range(12)]
    queue.cancel(ids[1])
    pool.start()
    try:
        await pool.drain(timeout=5)
    finally:
        await pool.shutdown()

    history = queue._validator.history
    for transition in history:
        assert transition.to_status in VALID_TRANSITIONS[transition.from_status]
    for job_id in ids:
        terminal = [
            t.to_status
            for t in history
            if t.job_id == job_id and t.to_status in (
                JobStatus.COMPLETED,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            )
        ]
        assert len(terminal) == 1
    assert pool.check_invariants() == []


@pytest.mark.asyncio
async def test_start_recovers_interrupted_jobs(queue: JobQueue) -> None:
    job_id = queue.enqueue(JobType.SYNC)
    queue.claim_next()

    pool = _pool(queue)
    pool.start()
    await pool.shutdown()

    job = queue.get_status(job_id)
    assert job.status == JobStatus.FAILED
    assert job.reason == FailureReason.TRANSIENT


@pytest.mark.asyncio
async def test_pool_dispatches_again_after_restart(queue: JobQueue) -> None:
    pool = _pool(queue, max_workers=1)

    async def sync(ctx: JobContext):
        return {"ok": True}

    pool.register(JobType.SYNC, sync)
    for _ in range(2):
        pool.start()
        try:
            job = await queue.wait_for(pool.submit(JobType.SYNC), timeout=2)
        finally:
            await pool.shutdown()
        assert job.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_telemetry_records_outcomes(queue: JobQueue, tmp_path: Path) -> None:
    telemetry = TelemetryRecorder(tmp_path / "telemetry")
    pool = _pool(queue, telemetry=telemetry)

    async def ok(ctx: JobContext):
        return None

    async def broken(ctx: JobContext):
        raise CircuitOpenError("lemlist")

    pool.register(JobType.ENRICH, ok)
    pool.register(JobType.OUTREACH, broken)
    pool.start()
    try:
        pool.submit(JobType.ENRICH, {})
        pool.submit(JobType.OUTREACH, {})
        await pool.drain(timeout=5)
    finally:
        await pool.shutdown()

    summary = json.loads(telemetry.summary_path.read_text())
    assert summary["jobs"] == 2
    assert summary["by_status"] == {"completed": 1, "failed": 1}
    assert summary["failure_reasons"] == {"circuit-open": 1}
    assert summary["by_type"]["outreach"]["by_status"] == {"failed": 1}
    lines = (tmp_path / "telemetry" / "jobs.jsonl").read_text().strip().splitlines()
    assert len(lines) == 2


def test_max_workers_must_be_positive(queue: JobQueue) -> None:
    with pytest.raises(ValueError):
        WorkerPool(queue, max_workers=0)
