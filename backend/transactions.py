from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

ZERO = Decimal("0")


@dataclass(frozen=True)
class Transaction:
    """A ledger row.

    Positive amounts are income, negative amounts are expenses. Rows with
    ``is_recurring`` set are templates; rows with ``parent_transaction_id``
    set are instances materialized from the template with that id.
    """

    amount: Decimal
    date: date
    user_id: int
    id: Optional[int] = None
    merchant: str = ""
    description: str = ""
    merchant_id: Optional[int] = None
    is_confirmed: bool = False
    is_recurring: bool = False
    recurring_interval: Optional[str] = None
    last_confirmed_date: Optional[date] = None
    version: int = 1
    parent_transaction_id: Optional[int] = None
    window_start: Optional[date] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "amount", coerce_amount(self.amount))

    @property
    def is_income(self) -> bool:
        return self.amount > ZERO

    @property
    def is_expense(self) -> bool:
        return self.amount < ZERO

    @property
    def lineage_root(self) -> Optional[int]:
        if self.parent_transaction_id is not None:
            return self.parent_transaction_id
        return self.id

    def with_fields(self, **fields) -> "Transaction":
        return replace(self, **fields)


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    color: str


@dataclass(frozen=True)
class Merchant:
    id: int
    name: str
    category_id: Optional[int] = None


def coerce_amount(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
