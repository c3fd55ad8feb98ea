"""State machine validation and invariant checking for the job lifecycle.

Jobs only move forward: pending -> running -> {completed, failed, cancelled},
plus pending -> cancelled. Re-running work creates a new job id.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Deque, Dict, Iterable, List, Optional, Set

from salespilot.errors import InvalidStateTransitionError

from .models import JobStatus

if TYPE_CHECKING:
    from salespilot.audit import AuditLogger

    from .queue import JobQueue


logger = logging.getLogger(__name__)


VALID_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {
        JobStatus.RUNNING,  # Claimed by a worker
        JobStatus.CANCELLED,  # Cancelled before start
    },
    JobStatus.RUNNING: {
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,  # Observed at a checkpoint
        JobStatus.RUNNING,  # Progress update (idempotent)
    },
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
    JobStatus.CANCELLED: set(),
}


@dataclass
class StateTransition:
    """Records a state transition attempt."""

    job_id: str
    from_status: JobStatus
    to_status: JobStatus
    timestamp: datetime
    operator: Optional[str] = None
    reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_valid(self) -> bool:
        return self.to_status in VALID_TRANSITIONS.get(self.from_status, set())


class StateMachineValidator:
    """Validates job transitions and keeps a bounded transition history.

    Transitions that matter to operators (cancellations, failures) are also
    written to the audit log when one is configured.
    """

    AUDITED = frozenset({JobStatus.CANCELLED, JobStatus.FAILED})

    def __init__(
        self,
        audit_logger: Optional[AuditLogger] = None,
        *,
        history_size: int = 1000,
    ) -> None:
        self._audit = audit_logger
        self._history: Deque[StateTransition] = deque(maxlen=history_size)

    @property
    def history(self) -> List[StateTransition]:
        return list(self._history)

    def validate_transition(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        *,
        operator: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> StateTransition:
        """Validate a transition before it is written.

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        transition = StateTransition(
            job_id=job_id,
            from_status=from_status,
            to_status=to_status,
            timestamp=datetime.now(timezone.utc),
            operator=operator,
            reason=reason,
        )

        if not transition.is_valid():
            logger.error(
                "Invalid state transition",
                extra={
                    "job_id": job_id,
                    "from_status": from_status.value,
                    "to_status": to_status.value,
                },
            )
            raise InvalidStateTransitionError(
                f"Invalid transition: {from_status.value} -> {to_status.value}",
                details={"job_id": job_id},
            )

        if from_status != to_status:
            self._history.append(transition)

        if self._audit and to_status in self.AUDITED and from_status != to_status:
            self._audit.record_action(
                source="job_queue",
                action=f"job_{to_status.value}",
                status="validated",
                subject_id=job_id,
                operator=operator,
                metadata={"from_status": from_status.value, "reason": reason},
            )

        return transition


class StateMachineInvariants:
    """Runtime checks over the queue contents."""

    @staticmethod
    def running_jobs_have_workers(queue: JobQueue, active_job_ids: Iterable[str]) -> List[str]:
        """RUNNING jobs must be owned by a live worker.

        Returns:
            Job ids that violate the invariant
        """
        active = set(active_job_ids)
        orphans = [
            job.job_id
            for job in queue.list_jobs(status=JobStatus.RUNNING, limit=None)
            if job.job_id not in active
        ]
        for job_id in orphans:
            logger.warning(
                "RUNNING job without active worker",
                extra={"job_id": job_id, "invariant": "running_jobs_have_workers"},
            )
        return orphans

    @staticmethod
    def terminal_jobs_have_completion_time(queue: JobQueue) -> List[str]:
        violations = []
        for status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
            for job in queue.list_jobs(status=status, limit=None):
                if job.completed_at is None:
                    violations.append(job.job_id)
        return violations


def check_invariants(queue: JobQueue, active_job_ids: Iterable[str]) -> List[str]:
    """Run all invariant checks and describe each violation."""
    violations = []
    for job_id in StateMachineInvariants.running_jobs_have_workers(queue, active_job_ids):
        violations.append(f"RUNNING job {job_id} has no active worker")
    for job_id in StateMachineInvariants.terminal_jobs_have_completion_time(queue):
        violations.append(f"Terminal job {job_id} has no completion time")
    return violations
