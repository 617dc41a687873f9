from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Union

from backend.errors import ValidationError
from backend.recurrence import anchor_date, next_due_date
from backend.salary_month import SalaryMonth, add_months, as_date, compute_salary_month
from backend.transactions import ZERO, Category, Merchant, Transaction

UNCATEGORIZED_NAME = "Uncategorized"
UNCATEGORIZED_COLOR = "#6B7280"
UPCOMING_HORIZON_DAYS = 30
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class HasCategory:
    name: str
    color: str


@dataclass(frozen=True)
class Uncategorized:
    name: str = UNCATEGORIZED_NAME
    color: str = UNCATEGORIZED_COLOR


UNCATEGORIZED = Uncategorized()

CategoryBucket = Union[HasCategory, Uncategorized]


@dataclass(frozen=True)
class LedgerTotals:
    current_income: Decimal
    current_expenses: Decimal
    total_income: Decimal
    total_expenses: Decimal
    total_pending_expenses: Decimal
    available: Decimal


@dataclass(frozen=True)
class CategorySlice:
    name: str
    value: Decimal
    color: str


@dataclass(frozen=True)
class UpcomingPayment:
    transaction: Transaction
    due_date: date


@dataclass(frozen=True)
class DashboardSummary:
    window: SalaryMonth
    monthly_income: Decimal
    monthly_expenses: Decimal
    recurring_expenses: Decimal
    savings_rate: Decimal
    total_balance: Decimal
    upcoming: List[UpcomingPayment]
    category_distribution: List[CategorySlice]


def aggregate_ledger(
    transactions: Iterable[Transaction],
    salary_day: int,
    now: date | datetime,
) -> LedgerTotals:
    window = compute_salary_month(salary_day, now)
    current_income = ZERO
    current_expenses = ZERO
    total_income = ZERO
    total_expenses = ZERO
    total_pending_expenses = ZERO

    for txn in transactions:
        if not txn.is_confirmed:
            if txn.is_expense:
                total_pending_expenses += -txn.amount
            continue
        in_window = window.contains(txn.date)
        if txn.is_income:
            total_income += txn.amount
            if in_window:
                current_income += txn.amount
        elif txn.is_expense:
            total_expenses += -txn.amount
            if in_window:
                current_expenses += -txn.amount

    return LedgerTotals(
        current_income=current_income,
        current_expenses=current_expenses,
        total_income=total_income,
        total_expenses=total_expenses,
        total_pending_expenses=total_pending_expenses,
        available=total_income - (total_expenses + total_pending_expenses),
    )


def resolve_category(
    transaction: Transaction,
    merchants_by_id: Dict[int, Merchant],
    categories_by_id: Dict[int, Category],
) -> CategoryBucket:
    if transaction.merchant_id is None:
        return UNCATEGORIZED
    merchant = merchants_by_id.get(transaction.merchant_id)
    if merchant is None or merchant.category_id is None:
        return UNCATEGORIZED
    category = categories_by_id.get(merchant.category_id)
    if category is None:
        return UNCATEGORIZED
    return HasCategory(name=category.name, color=category.color or UNCATEGORIZED_COLOR)


def aggregate_category_distribution(
    transactions: Iterable[Transaction],
    merchants: Iterable[Merchant],
    categories: Iterable[Category],
    window: SalaryMonth,
) -> List[CategorySlice]:
    """Confirmed expenses in ``window`` summed per category name, largest first.

    Categories sharing a name are merged and keep the first color seen.
    """
    merchants_by_id = {merchant.id: merchant for merchant in merchants}
    categories_by_id = {category.id: category for category in categories}
    totals: Dict[str, Decimal] = {}
    colors: Dict[str, str] = {}

    for txn in transactions:
        if not (txn.is_expense and txn.is_confirmed and window.contains(txn.date)):
            continue
        bucket = resolve_category(txn, merchants_by_id, categories_by_id)
        totals[bucket.name] = totals.get(bucket.name, ZERO) + -txn.amount
        colors.setdefault(bucket.name, bucket.color)

    slices = [
        CategorySlice(name=name, value=value, color=colors[name])
        for name, value in totals.items()
    ]
    slices.sort(key=lambda item: item.value, reverse=True)
    return slices


def upcoming_recurring(
    transactions: Iterable[Transaction],
    now: date | datetime,
    horizon_days: int = UPCOMING_HORIZON_DAYS,
) -> List[UpcomingPayment]:
    today = as_date(now)
    horizon = today + timedelta(days=horizon_days)
    upcoming = []
    for txn in transactions:
        if not txn.is_recurring:
            continue
        due = next_due_date(anchor_date(txn), txn.recurring_interval)
        if today <= due <= horizon:
            upcoming.append(UpcomingPayment(transaction=txn, due_date=due))
    upcoming.sort(key=lambda item: (item.due_date, item.transaction.id or 0))
    return upcoming


def build_dashboard(
    transactions: Iterable[Transaction],
    merchants: Iterable[Merchant],
    categories: Iterable[Category],
    salary_day: int,
    now: date | datetime,
    horizon_days: int = UPCOMING_HORIZON_DAYS,
) -> DashboardSummary:
    window = compute_salary_month(salary_day, now)
    rows = list(transactions)
    totals = aggregate_ledger(rows, salary_day, now)

    recurring_expenses = sum(
        (-txn.amount for txn in rows if txn.is_recurring and txn.is_expense),
        ZERO,
    )
    total_balance = sum((txn.amount for txn in rows), ZERO)

    return DashboardSummary(
        window=window,
        monthly_income=totals.current_income,
        monthly_expenses=totals.current_expenses,
        recurring_expenses=recurring_expenses,
        savings_rate=savings_rate(totals.current_income, totals.current_expenses),
        total_balance=total_balance,
        upcoming=upcoming_recurring(
            [txn for txn in rows if txn.is_expense], now, horizon_days
        ),
        category_distribution=aggregate_category_distribution(
            rows, merchants, categories, window
        ),
    )


def savings_rate(income: Decimal, expenses: Decimal) -> Decimal:
    if income <= ZERO:
        return ZERO
    rate = (income - expenses) / income * HUNDRED
    return max(ZERO, rate)


STATISTICS_RANGES = {
    "1month": 1,
    "3months": 3,
    "6months": 6,
    "1year": 12,
}
DEFAULT_STATISTICS_RANGE = "3months"


@dataclass(frozen=True)
class MonthlyStatistic:
    month: str
    amount: Decimal
    category: str
    color: str


def statistics_range(
    time_range: str | None,
    now: date | datetime,
    start: date | None = None,
    end: date | None = None,
) -> tuple[date, date]:
    """Resolve a named range (or ``custom`` with explicit bounds) to dates.

    Custom ranges run to the last day of ``end``'s month; named ranges
    count back whole months from ``now``. Unknown names use three months.
    """
    today = as_date(now)
    if time_range == "custom":
        if start is None or end is None:
            raise ValidationError("Custom ranges need a start and an end date.")
        last_day = calendar.monthrange(end.year, end.month)[1]
        end = end.replace(day=last_day)
        if start > end:
            raise ValidationError("Start date must not be after the end date.")
        return start, end
    months = STATISTICS_RANGES.get(time_range or "", STATISTICS_RANGES[DEFAULT_STATISTICS_RANGE])
    return add_months(today, -months), today


def monthly_statistics(
    transactions: Iterable[Transaction],
    merchants: Iterable[Merchant],
    categories: Iterable[Category],
    start: date,
    end: date,
    category_id: Optional[int] = None,
    merchant_id: Optional[int] = None,
) -> List[MonthlyStatistic]:
    """Expense totals per calendar month between ``start`` and ``end``.

    Each month is labelled with the category of its earliest expense.
    ``category_id`` filters through the merchant link.
    """
    merchants_by_id = {merchant.id: merchant for merchant in merchants}
    categories_by_id = {category.id: category for category in categories}
    totals: Dict[str, Decimal] = {}
    labels: Dict[str, CategoryBucket] = {}

    rows = sorted(transactions, key=lambda txn: (txn.date, txn.id or 0))
    for txn in rows:
        if not txn.is_expense or not start <= txn.date <= end:
            continue
        if merchant_id is not None and txn.merchant_id != merchant_id:
            continue
        if category_id is not None:
            merchant = merchants_by_id.get(txn.merchant_id)
            if merchant is None or merchant.category_id != category_id:
                continue
        month = txn.date.strftime("%Y-%m")
        totals[month] = totals.get(month, ZERO) + -txn.amount
        labels.setdefault(month, resolve_category(txn, merchants_by_id, categories_by_id))

    return [
        MonthlyStatistic(
            month=month,
            amount=amount,
            category=labels[month].name,
            color=labels[month].color,
        )
        for month, amount in sorted(totals.items())
    ]
