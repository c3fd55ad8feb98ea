"""Domain models for the job orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from salespilot.errors import FailureReason


class JobPriority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return 1 if self is JobPriority.HIGH else 0

    @classmethod
    def from_rank(cls, rank: int) -> "JobPriority":
        return cls.HIGH if rank >= 1 else cls.NORMAL


class JobType(str, Enum):
    DISCOVER = "discover"
    ENRICH = "enrich"
    SYNC = "sync"
    OUTREACH = "outreach"
    CUSTOM_WORKFLOW = "custom-workflow"


class JobStatus(str, Enum):
    """Job lifecycle states."""

    PENDING = "pending"  # Queued, awaiting a worker
    RUNNING = "running"  # Claimed by a worker
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


@dataclass(slots=True)
class Job:
    """Snapshot of a job row."""

    job_id: str
    job_type: JobType
    payload: Dict[str, Any]
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    reason: Optional[FailureReason] = None
    progress: float = 0.0
    result: Optional[Dict[str, Any]] = None
    cancel_requested: bool = False
    requeued_from: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None:
            return None
        end = self.completed_at or self.started_at
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type.value,
            "payload": self.payload,
            "priority": self.priority.value,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "reason": self.reason.value if self.reason else None,
            "progress": self.progress,
            "result": self.result,
            "cancel_requested": self.cancel_requested,
            "requeued_from": self.requeued_from,
            "duration_seconds": self.duration_seconds,
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
