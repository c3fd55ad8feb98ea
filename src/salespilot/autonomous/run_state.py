"""Persisted counters for the autonomous scheduler."""

from __future__ import annotations

import logging
from datetime import date, datetime
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError

from salespilot.errors import ConfigurationError

logger = logging.getLogger(__name__)


class RunState(BaseModel):
    """Cycle counters.

    The ``*_today`` counters belong to ``day``, a calendar date in the
    configured timezone; :meth:`roll` zeroes them when a new day starts.
    ``totals`` accumulate across days.
    """

    cycles_run: int = 0
    cycles_failed: int = 0
    consecutive_failures: int = 0
    day: Optional[date] = None
    discovered_today: int = 0
    enriched_today: int = 0
    synced_today: int = 0
    enrolled_today: int = 0
    follow_ups_today: int = 0
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    totals: Dict[str, int] = Field(default_factory=dict)

    def roll(self, today: date) -> bool:
        """Start a new day if ``today`` differs from :attr:`day`.

        Returns:
            True if the daily counters were reset
        """
        if self.day == today:
            return False
        self.day = today
        self.discovered_today = 0
        self.enriched_today = 0
        self.synced_today = 0
        self.enrolled_today = 0
        self.follow_ups_today = 0
        return True

    def add(self, counter: str, amount: int) -> None:
        """Increase a daily counter and its running total."""
        setattr(self, f"{counter}_today", getattr(self, f"{counter}_today") + amount)
        self.totals[counter] = self.totals.get(counter, 0) + amount

    def remaining(self, daily_cap: int) -> int:
        return max(0, daily_cap - max(self.discovered_today, self.enrolled_today))


class RunStateStore:
    """JSON file holding the :class:`RunState`."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> RunState:
        if not self.path.exists():
            return RunState()
        try:
            return RunState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise ConfigurationError(
                f"Corrupt run state in {self.path}", details={"errors": exc.errors()}
            ) from exc

    def save(self, state: RunState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(state.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(self.path)
        logger.debug("Run state saved", extra={"path": str(self.path)})
