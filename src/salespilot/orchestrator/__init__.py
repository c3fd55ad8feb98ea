"""Job orchestrator package: durable queue, worker pool and job lifecycle."""

from .locks import KeyedLocks
from .metrics import TelemetryRecorder
from .models import TERMINAL_STATUSES, Job, JobPriority, JobStatus, JobType
from .queue import JobQueue
from .state_machine import (
    VALID_TRANSITIONS,
    StateMachineInvariants,
    StateMachineValidator,
    StateTransition,
    check_invariants,
)
from .worker_pool import JobContext, JobHandler, WorkerPool

__all__ = [
    "TERMINAL_STATUSES",
    "VALID_TRANSITIONS",
    "Job",
    "JobContext",
    "JobHandler",
    "JobPriority",
    "JobQueue",
    "JobStatus",
    "JobType",
    "KeyedLocks",
    "StateMachineInvariants",
    "StateMachineValidator",
    "StateTransition",
    "TelemetryRecorder",
    "WorkerPool",
    "check_invariants",
]
