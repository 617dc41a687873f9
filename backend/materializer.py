from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable, List, Optional

from backend.errors import DuplicateInstanceError, NotFoundError, ValidationError
from backend.recurrence import template_due_date
from backend.salary_month import SalaryMonth, compute_salary_month
from backend.storage import LedgerStore
from backend.transactions import Transaction

logger = logging.getLogger(__name__)


def build_instance(
    template: Transaction,
    lineage: Iterable[Transaction],
    now: date | datetime,
    window_start: Optional[date] = None,
) -> Transaction:
    """Return an unsaved, non-recurring copy of ``template`` for its next due date.

    ``lineage`` holds the rows already linked to the template; the new
    version is one past the highest version among them and the template.
    The template itself is left untouched.
    """
    if not template.is_recurring:
        raise ValidationError("Transaction is not recurring.")
    return Transaction(
        user_id=template.user_id,
        description=template.description,
        merchant=template.merchant,
        merchant_id=template.merchant_id,
        amount=template.amount,
        date=template_due_date(template),
        is_confirmed=False,
        is_recurring=False,
        version=next_lineage_version(template, lineage),
        parent_transaction_id=template.id,
        window_start=window_start,
        created_at=now if isinstance(now, datetime) else None,
    )


def next_lineage_version(template: Transaction, lineage: Iterable[Transaction]) -> int:
    versions = [template.version]
    versions.extend(row.version for row in lineage if row.lineage_root == template.id)
    return max(versions) + 1


def find_window_instance(
    template: Transaction,
    existing: Iterable[Transaction],
    window: SalaryMonth,
) -> Optional[Transaction]:
    for row in existing:
        if row.is_recurring or not window.covers_due_date(row.date):
            continue
        if row.parent_transaction_id == template.id:
            return row
        if (
            row.description == template.description
            and row.merchant == template.merchant
            and row.amount == template.amount
        ):
            return row
    return None


def plan_pending_instances(
    templates: Iterable[Transaction],
    existing: Iterable[Transaction],
    salary_day: int,
    now: date | datetime,
) -> List[Transaction]:
    """Unsaved instances for every template due in the current salary month
    that does not already have one."""
    window = compute_salary_month(salary_day, now)
    existing = list(existing)
    planned: List[Transaction] = []
    for template in templates:
        if not template.is_recurring:
            continue
        try:
            due = template_due_date(template)
        except ValidationError as exc:
            logger.warning("Skipping template %s: %s", template.id, exc)
            continue
        if not window.covers_due_date(due):
            logger.debug(
                "Template %s next due %s outside %s..%s",
                template.id,
                due,
                window.start_date,
                window.next_salary_date,
            )
            continue
        if find_window_instance(template, existing, window):
            continue
        planned.append(
            build_instance(template, existing, now, window_start=window.start_date)
        )
    return planned


def materialize_instance(
    store: LedgerStore,
    template_id: int,
    now: date | datetime,
    user_id: Optional[int] = None,
) -> Transaction:
    template = store.find_transaction(template_id, user_id=user_id)
    if template is None:
        raise NotFoundError("Transaction", template_id)
    lineage = store.list_lineage(template.id)
    instance = store.create_instance(build_instance(template, lineage, now))
    logger.info(
        "Created instance %s (version %s) of template %s due %s",
        instance.id,
        instance.version,
        template.id,
        instance.date,
    )
    return instance


def materialize_pending_for_window(
    store: LedgerStore,
    user_id: int,
    salary_day: int,
    now: date | datetime,
) -> List[Transaction]:
    """Create the pending instances for the salary month containing ``now``.

    Each instance carries the window start; the store rejects a second
    instance for the same template and window, so a concurrent run that
    loses the race skips the template instead of duplicating it.
    """
    window = compute_salary_month(salary_day, now)
    templates = store.list_recurring_templates(user_id)
    existing = store.list_transactions(user_id)
    planned = plan_pending_instances(templates, existing, salary_day, now)
    logger.info(
        "Salary month %s..%s: %d templates, %d instances to create",
        window.start_date,
        window.end_date,
        len(templates),
        len(planned),
    )

    created: List[Transaction] = []
    for draft in planned:
        try:
            created.append(store.create_instance(draft))
        except DuplicateInstanceError as exc:
            logger.info(
                "Skipping template %s: instance already exists for %s",
                exc.template_id,
                exc.window_start,
            )
    return created
