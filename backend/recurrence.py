from __future__ import annotations

from datetime import date, datetime
from typing import Optional

from backend.errors import ValidationError
from backend.salary_month import SalaryMonth, add_months, as_date, compute_salary_month
from backend.transactions import Transaction

DEFAULT_INTERVAL = "monthly"

INTERVAL_MONTHS = {
    "monthly": 1,
    "quarterly": 3,
    "yearly": 12,
}


class RecurringInterval:
    values = set(INTERVAL_MONTHS)

    @classmethod
    def normalize(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @classmethod
    def validate(cls, value: str | None) -> str:
        normalized = cls.normalize(value)
        if normalized not in cls.values:
            raise ValidationError("Only monthly, quarterly, or yearly intervals are supported.")
        return normalized


def next_due_date(last_date: date, interval: str | None) -> date:
    """Advance ``last_date`` by one interval.

    Unknown or missing intervals leave the date unchanged.
    """
    months = INTERVAL_MONTHS.get(RecurringInterval.normalize(interval) or "")
    if months is None:
        return last_date
    return add_months(last_date, months)


def require_next_due_date(last_date: date, interval: str | None) -> date:
    normalized = RecurringInterval.validate(interval)
    return add_months(last_date, INTERVAL_MONTHS[normalized])


def anchor_date(transaction: Transaction) -> date:
    if transaction.last_confirmed_date is not None:
        return transaction.last_confirmed_date
    return transaction.date


def template_due_date(transaction: Transaction) -> date:
    """Next occurrence of a template, defaulting a missing interval to monthly."""
    interval = transaction.recurring_interval or DEFAULT_INTERVAL
    return require_next_due_date(anchor_date(transaction), interval)


def is_due_in_salary_month(
    transaction: Transaction,
    salary_day: int,
    now: date | datetime,
    window: Optional[SalaryMonth] = None,
) -> bool:
    if window is None:
        window = compute_salary_month(salary_day, now)
    if not transaction.is_recurring:
        return False
    # Never confirmed or no interval: due now.
    if transaction.last_confirmed_date is None:
        return True
    if RecurringInterval.normalize(transaction.recurring_interval) is None:
        return True
    due = next_due_date(
        as_date(transaction.last_confirmed_date),
        transaction.recurring_interval,
    )
    return window.covers_due_date(due)
