"""Cron trigger for the autonomous schedule.

APScheduler's own ``CronTrigger.from_crontab`` numbers weekdays from Monday,
so ``1-5`` would mean Tuesday to Saturday. Scheduling goes through croniter
instead, which reads the field the standard crontab way (0 and 7 are Sunday),
and both the fire times and the reported next run come from here.
"""

from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Optional

from apscheduler.triggers.base import BaseTrigger
from croniter import croniter


class CronScheduleTrigger(BaseTrigger):
    """Fires at the times a five-field cron expression names, in ``tz``."""

    def __init__(self, expression: str, tz: tzinfo) -> None:
        if not croniter.is_valid(expression):
            raise ValueError(f"Invalid cron expression: {expression}")
        self.expression = expression
        self.tz = tz

    def get_next_fire_time(
        self, previous_fire_time: Optional[datetime], now: datetime
    ) -> Optional[datetime]:
        base = (previous_fire_time or now).astimezone(self.tz)
        return croniter(self.expression, base).get_next(datetime)

    def __str__(self) -> str:
        return f"cron[{self.expression}]"

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} ({self.expression!r}, timezone={self.tz!s})>"
