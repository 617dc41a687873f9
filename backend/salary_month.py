from __future__ import annotations

from calendar import monthrange
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from backend.errors import ValidationError

MIN_SALARY_DAY = 1
MAX_SALARY_DAY = 31


@dataclass(frozen=True)
class SalaryMonth:
    """A one-month window anchored to the salary day, inclusive on both ends."""

    start_date: date
    end_date: date
    salary_day: int

    def contains(self, value: date) -> bool:
        return self.start_date <= as_date(value) <= self.end_date

    @property
    def next_salary_date(self) -> date:
        return self.end_date + timedelta(days=1)

    def covers_due_date(self, value: date) -> bool:
        """Due dates count through the next salary day itself, so a payment
        falling due on payday belongs to the month that payday closes."""
        return self.start_date <= as_date(value) <= self.next_salary_date

    def previous(self) -> "SalaryMonth":
        return compute_salary_month(self.salary_day, self.start_date - timedelta(days=1))

    def next(self) -> "SalaryMonth":
        return compute_salary_month(self.salary_day, self.end_date + timedelta(days=1))


def validate_salary_day(salary_day) -> int:
    if isinstance(salary_day, bool) or not isinstance(salary_day, int):
        raise ValidationError("Salary day must be an integer.")
    if not MIN_SALARY_DAY <= salary_day <= MAX_SALARY_DAY:
        raise ValidationError("Salary day must be between 1 and 31.")
    return salary_day


def compute_salary_month(salary_day: int, now: date | datetime) -> SalaryMonth:
    """Return the salary month containing ``now``.

    When the salary day does not exist in a month (31 in April, 30 in
    February) the anchor for that month is clamped to its last day, so
    consecutive windows stay contiguous.
    """
    salary_day = validate_salary_day(salary_day)
    today = as_date(now)

    this_anchor = anchor_in_month(today.year, today.month, salary_day)
    if today >= this_anchor:
        start_date = this_anchor
    else:
        start_date = add_months(this_anchor, -1, salary_day)
    next_anchor = add_months(start_date, 1, salary_day)
    return SalaryMonth(
        start_date=start_date,
        end_date=next_anchor - timedelta(days=1),
        salary_day=salary_day,
    )


def anchor_in_month(year: int, month: int, anchor_day: int) -> date:
    last_day = monthrange(year, month)[1]
    return date(year, month, min(anchor_day, last_day))


def add_months(start_date: date, months: int, anchor_day: int | None = None) -> date:
    if anchor_day is None:
        anchor_day = start_date.day
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    return anchor_in_month(year, month, anchor_day)


def as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
