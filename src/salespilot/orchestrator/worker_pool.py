"""Bounded asyncio worker pool that executes queued jobs by type."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from salespilot.errors import (
    ClientError,
    FailureReason,
    JobCancelledError,
    SalesPilotError,
    classify_exception,
)

from .metrics import TelemetryRecorder
from .models import Job, JobPriority, JobType
from .queue import JobQueue
from .state_machine import check_invariants

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Handed to a job handler; the handler's only way to touch its job row."""

    job: Job
    queue: JobQueue

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    def checkpoint(self) -> None:
        """Stop here if cancellation was requested.

        Raises:
            JobCancelledError: If the job's cancellation flag is set
        """
        if self.queue.is_cancel_requested(self.job.job_id):
            raise JobCancelledError(
                f"Job {self.job.job_id} cancelled", details={"job_id": self.job.job_id}
            )

    def report_progress(self, fraction: float) -> None:
        self.queue.update_progress(self.job.job_id, fraction)


JobHandler = Callable[[JobContext], Awaitable[Optional[Dict[str, Any]]]]


class WorkerPool:
    """Fixed-size pool pulling jobs from a :class:`JobQueue`.

    A job's error never escapes the pool: it is classified into a failure
    reason and written to the job row. Jobs are not re-enqueued automatically.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        max_workers: int = 4,
        telemetry: Optional[TelemetryRecorder] = None,
        poll_interval: float = 0.1,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._queue = queue
        self._max_workers = max_workers
        self._telemetry = telemetry
        self._poll_interval = poll_interval
        self._handlers: Dict[JobType, JobHandler] = {}
        self._wake: Optional[asyncio.Event] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._running = False

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_job_ids(self) -> List[str]:
        return list(self._tasks)

    def register(self, job_type: JobType, handler: JobHandler) -> None:
        self._handlers[JobType(job_type)] = handler

    def submit(
        self,
        job_type: JobType,
        payload: Optional[Dict[str, Any]] = None,
        priority: JobPriority = JobPriority.NORMAL,
    ) -> str:
        """Enqueue a job and wake an idle worker."""
        job_id = self._queue.enqueue(job_type, payload, priority)
        self.notify()
        return job_id

    def notify(self) -> None:
        if self._wake is not None:
            self._wake.set()

    def start(self) -> None:
        if self._running:
            return
        recovered = self._queue.recover_interrupted()
        semaphore = asyncio.Semaphore(self._max_workers)
        wake = self._wake = asyncio.Event()
        self._running = True
        self._dispatcher = asyncio.get_running_loop().create_task(
            self._dispatch_loop(semaphore, wake)
        )
        logger.info(
            "Worker pool started",
            extra={"max_workers": self._max_workers, "recovered_jobs": len(recovered)},
        )

    async def shutdown(self, *, timeout: float = 30.0) -> None:
        """Stop dispatching and wait for in-flight jobs to finish."""
        if not self._running:
            return
        self._running = False
        self.notify()
        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        in_flight = list(self._tasks.values())
        if in_flight:
            _, pending = await asyncio.wait(in_flight, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Worker pool stopped")

    async def drain(self, *, timeout: Optional[float] = None) -> None:
        """Wait until no job is pending or running."""

        async def _idle() -> None:
            while self._queue.active_count() or self._tasks:
                await asyncio.sleep(self._poll_interval)

        await asyncio.wait_for(_idle(), timeout)

    def check_invariants(self) -> List[str]:
        return check_invariants(self._queue, self._tasks.keys())

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch_loop(self, semaphore: asyncio.Semaphore, wake: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            await semaphore.acquire()
            job = self._queue.claim_next()
            if job is None:
                semaphore.release()
                wake.clear()
                try:
                    await asyncio.wait_for(wake.wait(), self._poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue
            self._tasks[job.job_id] = loop.create_task(self._run_job(job, semaphore))

    async def _run_job(self, job: Job, semaphore: asyncio.Semaphore) -> None:
        try:
            await self._process_job(job)
        finally:
            self._tasks.pop(job.job_id, None)
            semaphore.release()

    async def _process_job(self, job: Job) -> None:
        logger.info(
            "Processing job",
            extra={"job_id": job.job_id, "job_type": job.job_type.value},
        )
        start = time.perf_counter()
        handler = self._handlers.get(job.job_type)
        context = JobContext(job=job, queue=self._queue)
        try:
            if handler is None:
                raise ClientError(
                    f"No handler registered for {job.job_type.value} jobs",
                    details={"job_type": job.job_type.value},
                )
            context.checkpoint()
            result = await handler(context)
        except JobCancelledError:
            logger.info("Job cancelled at checkpoint", extra={"job_id": job.job_id})
            self._finish(job, start, "cancelled", lambda: self._queue.mark_cancelled(job.job_id))
        except asyncio.CancelledError:
            self._finish(
                job,
                start,
                "failed",
                lambda: self._queue.fail(
                    job.job_id, "Worker pool shut down", FailureReason.TRANSIENT
                ),
                reason=FailureReason.TRANSIENT,
            )
            raise
        except Exception as exc:  # noqa: BLE001
            reason = classify_exception(exc)
            if reason is FailureReason.VALIDATION:
                logger.error(
                    "Job dropped after invariant violation",
                    extra={"job_id": job.job_id, "job_type": job.job_type.value, "error": str(exc)},
                )
            else:
                logger.exception(
                    "Job failed",
                    extra={
                        "job_id": job.job_id,
                        "job_type": job.job_type.value,
                        "reason": reason.value,
                    },
                )
            message = str(exc) or type(exc).__name__
            self._finish(
                job,
                start,
                "failed",
                lambda: self._queue.fail(job.job_id, message, reason),
                reason=reason,
            )
        else:
            if result is not None and not isinstance(result, dict):
                result = {"value": result}
            self._finish(job, start, "completed", lambda: self._queue.complete(job.job_id, result))

    def _finish(
        self,
        job: Job,
        start: float,
        status: str,
        write: Callable[[], Job],
        *,
        reason: Optional[FailureReason] = None,
    ) -> None:
        try:
            write()
        except SalesPilotError:
            logger.exception(
                "Could not record job outcome",
                extra={"job_id": job.job_id, "status": status},
            )
        if self._telemetry:
            self._telemetry.record(
                job.job_id,
                job.job_type.value,
                time.perf_counter() - start,
                status,
                reason=reason.value if reason else None,
                active_workers=len(self._tasks),
                queue_depth=self._queue.pending_count(),
            )
