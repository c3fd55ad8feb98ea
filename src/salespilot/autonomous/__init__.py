"""Autonomous (YOLO) mode: unattended prospecting cycles with guardrails."""

from .config import AutonomousConfig, AutonomousConfigManager, ScoreThresholds
from .review import ReviewItem, ReviewStatus, ReviewStore
from .run_state import RunState, RunStateStore
from .scheduler import AutonomousScheduler, CycleAbortedError, CycleReport
from .scoring import WEIGHTS, Decision, composite_score, decide
from .trigger import CronScheduleTrigger

__all__ = [
    "WEIGHTS",
    "AutonomousConfig",
    "AutonomousConfigManager",
    "AutonomousScheduler",
    "CronScheduleTrigger",
    "CycleAbortedError",
    "CycleReport",
    "Decision",
    "ReviewItem",
    "ReviewStatus",
    "ReviewStore",
    "RunState",
    "RunStateStore",
    "ScoreThresholds",
    "composite_score",
    "decide",
]
