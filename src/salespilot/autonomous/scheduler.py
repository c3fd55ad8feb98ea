"""Autonomous (YOLO) mode: scheduled discover -> enrich -> sync -> outreach cycles.

The scheduler never calls a provider itself. Each stage is a job on the
shared queue; the scheduler enqueues it, waits for a terminal status and
decides what to enqueue next. A stage that fails, is cancelled or would hit
an already OPEN breaker aborts the cycle. ``max_consecutive_failures`` failed
cycles in a row trigger an emergency stop, which only an operator can clear.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from apscheduler.job import Job
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from salespilot.audit import AuditLogger
from salespilot.campaigns import Channel, EnrollmentStore
from salespilot.errors import ConfigurationError, SalesPilotError
from salespilot.orchestrator import JobQueue, JobStatus, JobType, WorkerPool
from salespilot.pipeline import PipelineDependencies
from salespilot.providers import EnrichedContact

from .config import AutonomousConfig, AutonomousConfigManager
from .review import ReviewStore
from .run_state import RunState, RunStateStore
from .scoring import Decision, composite_score, decide
from .trigger import CronScheduleTrigger

logger = logging.getLogger(__name__)

SCHEDULER_JOB_ID = "autonomous-cycle"


class CycleAbortedError(SalesPilotError):
    """A cycle stage did not complete."""

    code = "CYCLE_ABORTED"
    default_message = "Autonomous cycle aborted"

    def __init__(
        self,
        stage: str,
        message: str,
        *,
        reason: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> None:
        self.stage = stage
        self.failure_reason = reason
        self.job_id = job_id
        super().__init__(
            message, details={"stage": stage, "reason": reason, "job_id": job_id}
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CycleReport:
    """What one cycle did."""

    cycle_id: str
    trigger: str
    started_at: datetime
    status: str = "running"
    finished_at: Optional[datetime] = None
    skipped_reason: Optional[str] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None
    cap_reached: bool = False
    discovered: int = 0
    viable: int = 0
    enriched: int = 0
    approved: int = 0
    kept_for_review: int = 0
    synced: int = 0
    enrolled: int = 0
    follow_ups: int = 0
    job_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class AutonomousScheduler:
    """Runs autonomous cycles on a cron schedule.

    Args:
        config_manager: Owner of the autonomous configuration
        pool: Worker pool executing the stage jobs
        queue: Queue the pool reads from
        dependencies: Pipeline dependencies, used for breaker fast-skip checks
        store: Enrollment store, for campaign channels and due follow-ups
        review_store: Where contacts held back from outreach are kept
        run_state_store: Persisted counters
        audit_logger: Receives cycle outcomes and mode changes
        clock: Wall clock; must return aware datetimes
        poll_interval: How often stage jobs are polled
    """

    def __init__(
        self,
        *,
        config_manager: AutonomousConfigManager,
        pool: WorkerPool,
        queue: JobQueue,
        dependencies: PipelineDependencies,
        store: EnrollmentStore,
        review_store: ReviewStore,
        run_state_store: RunStateStore,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
        poll_interval: float = 0.5,
    ) -> None:
        self._config = config_manager
        self._pool = pool
        self._queue = queue
        self._dependencies = dependencies
        self._store = store
        self._reviews = review_store
        self._state_store = run_state_store
        self._audit = audit_logger
        self._clock = clock
        self._poll_interval = poll_interval
        self._cycle_lock = asyncio.Lock()
        self._current_job_id: Optional[str] = None
        self._scheduler: Optional[AsyncIOScheduler] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Register the cron job with APScheduler and start it."""
        if self._scheduler is not None:
            return
        config = self._config.load()
        self._scheduler = AsyncIOScheduler(timezone=config.tz)
        self._add_cron_job(config)
        self._scheduler.start()
        self._store_next_run(config)
        logger.info(
            "Autonomous scheduler started",
            extra={"schedule": config.schedule_cron, "mode": config.mode},
        )

    async def shutdown(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        # Let an in-flight cycle finish its current stage bookkeeping
        async with self._cycle_lock:
            pass
        logger.info("Autonomous scheduler stopped")

    def reschedule(self) -> None:
        """Pick up a changed ``schedule_cron`` or ``timezone``."""
        config = self._config.load()
        if self._scheduler is not None:
            self._add_cron_job(config)
        self._store_next_run(config)

    @property
    def scheduled_job(self) -> Optional[Job]:
        """The registered APScheduler job, or ``None`` before :meth:`start`."""
        if self._scheduler is None:
            return None
        return self._scheduler.get_job(SCHEDULER_JOB_ID)

    def _add_cron_job(self, config: AutonomousConfig) -> None:
        if self._scheduler is None:
            raise SalesPilotError("Autonomous scheduler is not running")
        self._scheduler.add_job(
            self._scheduled_cycle,
            trigger=CronScheduleTrigger(config.schedule_cron, config.tz),
            id=SCHEDULER_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    async def _scheduled_cycle(self) -> None:
        try:
            await self.run_cycle(trigger="schedule")
        except SalesPilotError:
            logger.exception("Scheduled autonomous cycle crashed")

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    def enable(self, operator: str) -> AutonomousConfig:
        config = self._config.enable(operator)
        self._store_next_run(config)
        return config

    def disable(self, operator: str, *, immediate: bool = False) -> AutonomousConfig:
        """Stop scheduling new cycles; ``immediate`` also cancels the running stage job."""
        config = self._config.disable(operator)
        if immediate:
            self._cancel_current(operator)
        return config

    def emergency_stop(self, operator: str, reason: str) -> AutonomousConfig:
        """Stop autonomous mode until an operator resumes it.

        The in-flight stage job, if any, is cancelled.
        """
        logger.warning(
            "EMERGENCY STOP", extra={"operator": operator, "emergency_reason": reason}
        )
        config = self._config.emergency_stop(operator, reason)
        self._cancel_current(operator)
        return config

    def resume_after_emergency(self, operator: str) -> AutonomousConfig:
        config = self._config.resume_after_emergency(operator)
        state = self._state_store.load()
        state.consecutive_failures = 0
        self._state_store.save(state)
        self._store_next_run(config)
        return config

    def _cancel_current(self, operator: str) -> None:
        job_id = self._current_job_id
        if job_id is None:
            return
        job = self._queue.cancel(job_id, operator=operator)
        logger.info(
            "Cancelled in-flight cycle job",
            extra={"job_id": job_id, "job_status": job.status.value},
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        config = self._config.load()
        state = self._state_store.load()
        return {
            "mode": config.mode,
            "enabled": config.enabled,
            "emergency_stopped": config.emergency_stopped,
            "emergency_reason": config.emergency_reason,
            "schedule_cron": config.schedule_cron,
            "timezone": config.timezone,
            "daily_cap": config.daily_cap,
            "quality_threshold": config.quality_threshold,
            "campaign_id": config.campaign_id,
            "cycle_running": self._cycle_lock.locked(),
            "current_job_id": self._current_job_id,
            "next_run_at": self.next_run_at(config),
            "open_circuits": sorted(
                {
                    name
                    for job_type in (JobType.DISCOVER, JobType.ENRICH, JobType.SYNC, JobType.OUTREACH)
                    for name in self._dependencies.open_dependencies(job_type)
                }
            ),
            "review_queue": self._reviews.counts(),
            "run_state": state.model_dump(mode="json"),
        }

    def next_run_at(self, config: Optional[AutonomousConfig] = None) -> datetime:
        config = config or self._config.config
        trigger = CronScheduleTrigger(config.schedule_cron, config.tz)
        return trigger.get_next_fire_time(None, self._clock())

    def _store_next_run(self, config: AutonomousConfig) -> None:
        state = self._state_store.load()
        state.next_run_at = self.next_run_at(config)
        self._state_store.save(state)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, *, trigger: str = "manual") -> CycleReport:
        """Run one cycle now.

        Returns:
            The cycle report; ``status`` is ``completed``, ``failed`` or ``skipped``
        """
        report = CycleReport(cycle_id=str(uuid.uuid4()), trigger=trigger, started_at=self._clock())
        if self._cycle_lock.locked():
            return self._skip(report, "cycle_in_progress")

        async with self._cycle_lock:
            config = self._config.load()
            if config.emergency_stopped:
                return self._skip(report, "emergency_stopped")
            if not config.enabled:
                return self._skip(report, "disabled")

            state = self._state_store.load()
            if state.roll(report.started_at.astimezone(config.tz).date()):
                logger.info("New autonomous day", extra={"day": state.day.isoformat()})
            state.cycles_run += 1
            state.last_run_at = report.started_at

            try:
                if state.remaining(config.daily_cap) > 0:
                    await self._prospect(config, state, report)
                else:
                    report.cap_reached = True
                    logger.info(
                        "Daily cap reached, skipping prospecting",
                        extra={"daily_cap": config.daily_cap, "cycle_id": report.cycle_id},
                    )
                await self._monitor(config, state, report)
            except CycleAbortedError as exc:
                report.failed_stage = exc.stage
                report.reason = exc.failure_reason
                self._fail(config, state, report, exc.message)
            except SalesPilotError as exc:
                report.reason = exc.reason.value
                self._fail(config, state, report, exc.message)
            else:
                report.status = "completed"
                state.consecutive_failures = 0
                state.last_error = None
            finally:
                report.finished_at = self._clock()
                state.next_run_at = self.next_run_at(config)
                self._state_store.save(state)

            self._record_cycle(report)
            return report

    async def _prospect(self, config: AutonomousConfig, state: RunState, report: CycleReport) -> None:
        limit = min(config.discovery_limit, state.remaining(config.daily_cap))
        result = await self._run_stage(
            JobType.DISCOVER, {"icp_criteria": config.icp_profile, "limit": limit}, report
        )
        candidates = result.get("candidates", [])[:limit]
        report.discovered = len(candidates)
        state.add("discovered", len(candidates))

        viable = [
            c for c in candidates if c.get("preliminary_score", 0.0) >= config.min_viability_score
        ]
        report.viable = len(viable)
        if not viable:
            return

        result = await self._run_stage(
            JobType.ENRICH, {"candidates": viable, "icp_profile": config.icp_profile}, report
        )
        contacts = [EnrichedContact.model_validate(c) for c in result.get("contacts", [])]
        report.enriched = len(contacts)
        state.add("enriched", len(contacts))

        approved = self._gate(config, state, contacts, report)
        if not approved:
            return

        result = await self._run_stage(
            JobType.SYNC, {"contacts": [c.model_dump(mode="json") for c in approved]}, report
        )
        synced = result.get("contacts", [])
        report.synced = len(synced)
        state.add("synced", len(synced))

        if config.campaign_id is None:
            raise ConfigurationError("No campaign configured for autonomous outreach")
        result = await self._run_stage(
            JobType.OUTREACH,
            {
                "action": "enroll",
                "campaign_id": config.campaign_id,
                "channel": config.enrollment_channel.value,
                "contacts": synced,
            },
            report,
            channels=self._campaign_channels(config.campaign_id),
        )
        enrolled = len(result.get("enrolled", []))
        report.enrolled = enrolled
        state.add("enrolled", enrolled)

    def _gate(
        self,
        config: AutonomousConfig,
        state: RunState,
        contacts: List[EnrichedContact],
        report: CycleReport,
    ) -> List[EnrichedContact]:
        """Split contacts into those contacted now and those kept for review."""
        room = max(0, config.daily_cap - state.enrolled_today)
        if config.campaign_id is None:
            logger.warning("No campaign configured; approved contacts kept for review")
            room = 0

        approved: List[EnrichedContact] = []
        for contact in contacts:
            score = composite_score(contact.sub_scores) if contact.sub_scores else 0.0
            decision = decide(score, config.thresholds)
            if decision is Decision.AUTO_APPROVE:
                if len(approved) < room:
                    approved.append(contact)
                    continue
                decision = Decision.DEFERRED
            self._reviews.add(contact, score, decision, cycle_id=report.cycle_id)
            report.kept_for_review += 1

        report.approved = len(approved)
        return approved

    async def _monitor(self, config: AutonomousConfig, state: RunState, report: CycleReport) -> None:
        """Send follow-up steps that fell due. Not counted against the daily cap."""
        if config.follow_up_limit == 0:
            return
        due = self._store.due_for_followup(now=self._clock(), limit=config.follow_up_limit)
        if not due:
            return
        channels = set()
        for enrollment in due:
            channels.update(self._campaign_channels(enrollment.campaign_id))
        result = await self._run_stage(
            JobType.OUTREACH,
            {
                "action": "follow_up",
                "enrollment_ids": [e.enrollment_id for e in due],
            },
            report,
            channels=channels,
        )
        sent = len(result.get("sent", []))
        report.follow_ups = sent
        state.add("follow_ups", sent)

    async def _run_stage(
        self,
        job_type: JobType,
        payload: Dict[str, Any],
        report: CycleReport,
        *,
        channels: Optional[Iterable[Channel]] = None,
    ) -> Dict[str, Any]:
        stage = job_type.value
        config = self._config.load()
        if config.emergency_stopped or not config.enabled:
            raise CycleAbortedError(stage, f"Autonomous mode is {config.mode}", reason=config.mode)

        open_circuits = self._dependencies.open_dependencies(job_type, channels)
        if open_circuits:
            raise CycleAbortedError(
                stage,
                f"Skipped {stage}: circuit open for {', '.join(open_circuits)}",
                reason="circuit-open",
            )

        job_id = self._pool.submit(job_type, payload)
        report.job_ids.append(job_id)
        self._current_job_id = job_id
        try:
            job = await self._queue.wait_for(
                job_id, poll_interval=self._poll_interval, timeout=config.stage_timeout_seconds
            )
        except asyncio.TimeoutError:
            self._queue.cancel(job_id, operator="autonomous_scheduler")
            raise CycleAbortedError(
                stage,
                f"{stage} job {job_id} exceeded {config.stage_timeout_seconds}s",
                reason="timeout",
                job_id=job_id,
            ) from None
        finally:
            self._current_job_id = None

        if job.status != JobStatus.COMPLETED:
            raise CycleAbortedError(
                stage,
                f"{stage} job {job_id} {job.status.value}: {job.error or 'no error recorded'}",
                reason=job.reason.value if job.reason else job.status.value,
                job_id=job_id,
            )
        return job.result or {}

    def _campaign_channels(self, campaign_id: str) -> List[Channel]:
        sequence = self._store.get_sequence(campaign_id)
        return sorted({step.channel for step in sequence.steps}, key=lambda c: c.value)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _skip(self, report: CycleReport, reason: str) -> CycleReport:
        report.status = "skipped"
        report.skipped_reason = reason
        report.finished_at = self._clock()
        logger.info(
            "Autonomous cycle skipped",
            extra={"cycle_id": report.cycle_id, "skipped_reason": reason},
        )
        return report

    def _fail(
        self,
        config: AutonomousConfig,
        state: RunState,
        report: CycleReport,
        message: str,
    ) -> None:
        report.status = "failed"
        report.error = message
        state.cycles_failed += 1
        state.consecutive_failures += 1
        state.last_error = message
        logger.error(
            "Autonomous cycle failed",
            extra={
                "cycle_id": report.cycle_id,
                "stage": report.failed_stage,
                "reason": report.reason,
                "consecutive_failures": state.consecutive_failures,
            },
        )
        stopped = self._config.config.emergency_stopped
        if not stopped and state.consecutive_failures >= config.max_consecutive_failures:
            self.emergency_stop(
                "autonomous_scheduler",
                f"{state.consecutive_failures} consecutive failed cycles; last error: {message}",
            )

    def _record_cycle(self, report: CycleReport) -> None:
        logger.info(
            "Autonomous cycle finished",
            extra={
                "cycle_id": report.cycle_id,
                "cycle_status": report.status,
                "discovered": report.discovered,
                "enrolled": report.enrolled,
                "follow_ups": report.follow_ups,
            },
        )
        if self._audit:
            self._audit.record_action(
                source="autonomous_scheduler",
                action=f"cycle_{report.status}",
                status=report.status,
                subject_id=report.cycle_id,
                metadata=report.to_dict(),
            )
