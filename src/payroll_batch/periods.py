"""Pay period parsing and date-range arithmetic."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, timedelta

from payroll_batch.exceptions import ValidationError

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True, order=True)
class PayPeriod:
    """A monthly pay period identified by year and month."""

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValidationError(f"Invalid month {self.month}")
        if not 1900 <= self.year <= 9999:
            raise ValidationError(f"Invalid year {self.year}")

    @classmethod
    def parse(cls, value: str) -> PayPeriod:
        """Parse a ``YYYY-MM`` string."""
        match = _PERIOD_RE.match((value or "").strip())
        if match is None:
            raise ValidationError(f"Malformed period '{value}', expected YYYY-MM")
        return cls(int(match.group(1)), int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def date_range(self, cycle_start_day: int = 1) -> tuple[date, date]:
        """Return the inclusive (start, end) dates of the period.

        A cycle start day of 1 is the calendar month. Day N > 1 runs from
        day N of the previous month to day N-1 of this month.
        """
        if cycle_start_day == 1:
            start = date(self.year, self.month, 1)
            end = _first_of_next_month(start) - timedelta(days=1)
            return start, end

        end = date(self.year, self.month, cycle_start_day - 1)
        prev_year, prev_month = (
            (self.year - 1, 12) if self.month == 1 else (self.year, self.month - 1)
        )
        start = date(prev_year, prev_month, cycle_start_day)
        return start, end

    def total_days(self, cycle_start_day: int = 1) -> int:
        start, end = self.date_range(cycle_start_day)
        return (end - start).days + 1


def _first_of_next_month(d: date) -> date:
    if d.month == 12:
        return date(d.year + 1, 1, 1)
    return date(d.year, d.month + 1, 1)
