"""
Recurring schedules for reconciliation tasks.

A schedule is either a fixed interval or a 5-field cron expression and
is turned into an APScheduler trigger when the scheduler arms a task.
"""

import re
from dataclasses import dataclass
from datetime import timedelta

from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

_INTERVAL_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([smhd]?)$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600, "d": 86400}


def split_cron_expression(expression: str) -> tuple[str, str, str, str, str]:
    """
    Split a cron expression into its five fields

    Raises:
        ValueError: If the expression does not have exactly 5 parts
    """
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(
            "Cron expression must have 5 parts: minute hour day month day_of_week"
        )
    minute, hour, day, month, day_of_week = parts
    return minute, hour, day, month, day_of_week


@dataclass(frozen=True)
class Schedule:
    """
    How often a task runs automatically.

    Exactly one of ``interval`` and ``cron_expression`` is set.

    Examples:
        Schedule.every(minutes=5)
        Schedule.cron("0 */6 * * *")   # every 6 hours
        Schedule.parse("15m")
    """

    interval: timedelta | None = None
    cron_expression: str | None = None

    def __post_init__(self):
        if (self.interval is None) == (self.cron_expression is None):
            raise ValueError("Schedule needs exactly one of interval or cron_expression")
        if self.interval is not None and self.interval.total_seconds() <= 0:
            raise ValueError(f"Schedule interval must be positive, got {self.interval}")
        if self.cron_expression is not None:
            # CronTrigger rejects out-of-range or malformed fields
            self.to_trigger()

    @classmethod
    def every(cls, *, seconds: float = 0, minutes: float = 0, hours: float = 0, days: float = 0) -> "Schedule":
        return cls(interval=timedelta(seconds=seconds, minutes=minutes, hours=hours, days=days))

    @classmethod
    def cron(cls, expression: str) -> "Schedule":
        return cls(cron_expression=" ".join(expression.split()))

    @classmethod
    def parse(cls, text: str) -> "Schedule":
        """
        Parse a schedule from configuration text

        Accepts ``"300"``, ``"300s"``, ``"5m"``, ``"6h"``, ``"1d"`` or a
        5-part cron expression.
        """
        text = (text or "").strip()
        match = _INTERVAL_PATTERN.match(text)
        if match:
            amount, unit = match.groups()
            return cls.every(seconds=float(amount) * _UNIT_SECONDS[unit.lower()])
        return cls.cron(text)

    @property
    def is_interval(self) -> bool:
        return self.interval is not None

    def to_trigger(self, timezone: str = "UTC") -> BaseTrigger:
        """Build the APScheduler trigger for this schedule."""
        if self.interval is not None:
            return IntervalTrigger(seconds=self.interval.total_seconds(), timezone=timezone)

        minute, hour, day, month, day_of_week = split_cron_expression(self.cron_expression)
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone,
        )

    def describe(self) -> str:
        if self.interval is not None:
            seconds = self.interval.total_seconds()
            for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
                if seconds >= size and seconds % size == 0:
                    return f"every {int(seconds // size)}{unit}"
            return f"every {seconds:g}s"
        return f"cron '{self.cron_expression}'"

    def __str__(self) -> str:
        return self.describe()
