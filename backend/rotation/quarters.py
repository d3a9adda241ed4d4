from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Union


class InvalidDateError(ValueError):
    pass


class InvalidQuarterBounds(ValueError):
    pass


DateLike = Union[date, str]


def parse_iso_date(value: DateLike) -> date:
    """
    Strict YYYY-MM-DD parsing. datetimes are truncated to their date.
    """

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value or "").strip()
    if len(s) != 10:
        raise InvalidDateError(f"expected YYYY-MM-DD, got {value!r}")
    try:
        return date.fromisoformat(s)
    except ValueError as e:
        raise InvalidDateError(f"expected YYYY-MM-DD, got {value!r}") from e


def add_days(d: date, days: int) -> date:
    return d + timedelta(days=days)


def end_of_month(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def shift_quarter_end(d: date, quarters: int) -> date:
    """
    Last calendar day of the month lying 3*quarters months from the month of `d`.

    Never a fixed day offset: 2024-02-29 shifted +1 lands on 2024-05-31.
    """

    months = d.year * 12 + (d.month - 1) + 3 * quarters
    return end_of_month(months // 12, months % 12 + 1)


@dataclass(frozen=True)
class QuarterBounds:
    start: date
    end: date

    def __post_init__(self) -> None:
        if not isinstance(self.start, date) or not isinstance(self.end, date):
            raise InvalidQuarterBounds("quarter bounds must be dates")
        if self.start > self.end:
            raise InvalidQuarterBounds(f"quarter start {self.start} is after end {self.end}")

    @classmethod
    def parse(cls, start: DateLike, end: DateLike) -> "QuarterBounds":
        return cls(start=parse_iso_date(start), end=parse_iso_date(end))

    @classmethod
    def for_quarter_end(cls, quarter_end: date) -> "QuarterBounds":
        prev = shift_quarter_end(quarter_end, -1)
        return cls(start=prev + timedelta(days=1), end=quarter_end)

    @property
    def prev_quarter_end(self) -> date:
        return shift_quarter_end(self.end, -1)

    @property
    def next_quarter_end(self) -> date:
        return shift_quarter_end(self.end, 1)

    def contains(self, d: date) -> bool:
        return self.start <= d <= self.end

    def in_next_quarter(self, d: date) -> bool:
        return self.end < d <= self.next_quarter_end

    @property
    def label(self) -> str:
        q = (self.end.month - 1) // 3 + 1
        return f"{self.end.year}Q{q}"
