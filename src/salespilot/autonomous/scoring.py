"""ICP composite scoring and the quality gate decision."""

from __future__ import annotations

from enum import Enum
from typing import Dict

from salespilot.providers import SubScores

from .config import ScoreThresholds

WEIGHTS: Dict[str, float] = {
    "fit": 0.35,
    "intent": 0.35,
    "reachability": 0.20,
    "freshness": 0.10,
}


class Decision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    REVIEW = "review"
    LOW_PRIORITY = "low_priority"
    DISQUALIFIED = "disqualified"
    # Passed the gate but the daily cap was already used up
    DEFERRED = "deferred"


def composite_score(scores: SubScores) -> float:
    """Weighted sum of the four sub-scores, rounded to four places."""
    total = sum(getattr(scores, name) * weight for name, weight in WEIGHTS.items())
    return round(total, 4)


def decide(score: float, thresholds: ScoreThresholds) -> Decision:
    """Map a composite score onto a decision.

    Only :attr:`Decision.AUTO_APPROVE` contacts are contacted automatically.
    Every other decision keeps the contact for manual review, ranked.
    """
    if score >= thresholds.auto_approve:
        return Decision.AUTO_APPROVE
    if score >= thresholds.review_required:
        return Decision.REVIEW
    if score >= thresholds.disqualify:
        return Decision.LOW_PRIORITY
    return Decision.DISQUALIFIED
