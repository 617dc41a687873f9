from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Optional

from backend.recurrence import is_due_in_salary_month
from backend.salary_month import SalaryMonth
from backend.transactions import Transaction


class DueStatus(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    UNCONFIRMED = "unconfirmed"


def classify_status(
    transaction: Transaction,
    salary_day: int,
    now: date | datetime,
    window: Optional[SalaryMonth] = None,
) -> DueStatus:
    if transaction.is_confirmed:
        return DueStatus.CONFIRMED
    if is_due_in_salary_month(transaction, salary_day, now, window=window):
        return DueStatus.PENDING
    return DueStatus.UNCONFIRMED


def confirmation_fields(
    transaction: Transaction,
    confirmed: bool,
    confirmed_on: Optional[date] = None,
) -> dict:
    """Field updates for toggling confirmation.

    Confirming anchors the next due date on ``confirmed_on`` (or the row's
    own date); un-confirming clears the anchor.
    """
    if confirmed:
        return {
            "is_confirmed": True,
            "last_confirmed_date": confirmed_on or transaction.date,
        }
    return {"is_confirmed": False, "last_confirmed_date": None}


def apply_confirmation(
    transaction: Transaction,
    confirmed: bool,
    confirmed_on: Optional[date] = None,
) -> Transaction:
    return transaction.with_fields(
        **confirmation_fields(transaction, confirmed, confirmed_on)
    )
