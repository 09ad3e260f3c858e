from __future__ import annotations

from dataclasses import dataclass
from datetime import MAXYEAR, MINYEAR, date, datetime, timezone
from typing import Optional


def to_utc(value: date | datetime) -> datetime:
    """Return a naive datetime expressed in UTC.

    Aware values are shifted to UTC, naive values are assumed to already be
    UTC, and plain dates map to midnight.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime(value.year, value.month, value.day)


@dataclass(frozen=True)
class ReportPeriod:
    start: datetime
    end_exclusive: datetime

    @classmethod
    def for_month(cls, year: int, month: int) -> "ReportPeriod":
        if month < 1 or month > 12:
            raise ValueError("Month must be between 1 and 12.")
        _check_year(year)
        start = datetime(year, month, 1)
        if month == 12:
            return cls(start=start, end_exclusive=datetime(year + 1, 1, 1))
        return cls(start=start, end_exclusive=datetime(year, month + 1, 1))

    @classmethod
    def for_year(cls, year: int) -> "ReportPeriod":
        _check_year(year)
        return cls(start=datetime(year, 1, 1), end_exclusive=datetime(year + 1, 1, 1))

    @classmethod
    def for_year_or_month(cls, year: int, month: Optional[int] = None) -> "ReportPeriod":
        if month is None:
            return cls.for_year(year)
        return cls.for_month(year, month)

    def contains(self, value: date | datetime) -> bool:
        moment = to_utc(value)
        return self.start <= moment < self.end_exclusive


def _check_year(year: int) -> None:
    # The exclusive end of a period falls in the following year.
    if year < MINYEAR or year >= MAXYEAR:
        raise ValueError(f"Year must be between {MINYEAR} and {MAXYEAR - 1}.")
