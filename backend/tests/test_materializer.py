import unittest
from datetime import date, datetime
from decimal import Decimal

from backend.due_status import DueStatus, classify_status
from backend.errors import DuplicateInstanceError, NotFoundError, ValidationError
from backend.materializer import (
    build_instance,
    materialize_instance,
    materialize_pending_for_window,
    plan_pending_instances,
)
from backend.recurrence import is_due_in_salary_month
from backend.storage import SqlLedgerStore, build_engine
from backend.transactions import Transaction


def make_template(**overrides) -> Transaction:
    fields = dict(
        id=10,
        user_id=1,
        merchant="Landlord",
        description="Rent",
        amount=Decimal("-50"),
        date=date(2024, 1, 23),
        is_recurring=True,
        recurring_interval="monthly",
        last_confirmed_date=date(2024, 5, 23),
    )
    fields.update(overrides)
    return Transaction(**fields)


class BuildInstanceTests(unittest.TestCase):
    def test_copies_template_and_links_lineage(self) -> None:
        template = make_template()
        snapshot = make_template()

        instance = build_instance(template, [template], datetime(2024, 6, 10, 9, 0))

        self.assertEqual(template, snapshot)
        self.assertIsNone(instance.id)
        self.assertEqual(instance.description, "Rent")
        self.assertEqual(instance.merchant, "Landlord")
        self.assertEqual(instance.amount, Decimal("-50"))
        self.assertEqual(instance.date, date(2024, 6, 23))
        self.assertFalse(instance.is_confirmed)
        self.assertFalse(instance.is_recurring)
        self.assertEqual(instance.parent_transaction_id, 10)
        self.assertEqual(instance.user_id, 1)
        self.assertEqual(instance.version, 2)

    def test_version_is_one_past_lineage_maximum(self) -> None:
        template = make_template()
        lineage = [
            template,
            make_template(id=11, is_recurring=False, parent_transaction_id=10, version=2),
            make_template(id=12, is_recurring=False, parent_transaction_id=10, version=5),
            make_template(id=13, is_recurring=False, parent_transaction_id=99, version=40),
        ]

        instance = build_instance(template, lineage, date(2024, 6, 10))

        self.assertEqual(instance.version, 6)

    def test_uses_template_date_when_never_confirmed(self) -> None:
        template = make_template(last_confirmed_date=None, recurring_interval="quarterly")

        instance = build_instance(template, [], date(2024, 6, 10))

        self.assertEqual(instance.date, date(2024, 4, 23))

    def test_rejects_non_recurring_rows(self) -> None:
        with self.assertRaises(ValidationError):
            build_instance(make_template(is_recurring=False), [], date(2024, 6, 10))

    def test_rejects_unknown_interval(self) -> None:
        with self.assertRaises(ValidationError):
            build_instance(make_template(recurring_interval="weekly"), [], date(2024, 6, 10))


class PlanPendingInstancesTests(unittest.TestCase):
    now = date(2024, 6, 10)

    def test_plans_only_due_templates_without_instances(self) -> None:
        due = make_template(id=10)
        already_linked = make_template(id=20, description="Internet", amount=Decimal("-30"))
        already_matching = make_template(id=30, description="Gym", amount=Decimal("-25"))
        not_due = make_template(id=40, description="Insurance", recurring_interval="yearly")
        existing = [
            make_template(
                id=21,
                description="Internet",
                amount=Decimal("-30"),
                is_recurring=False,
                parent_transaction_id=20,
                date=date(2024, 6, 1),
            ),
            make_template(
                id=31,
                description="Gym",
                amount=Decimal("-25"),
                is_recurring=False,
                date=date(2024, 5, 30),
            ),
        ]

        planned = plan_pending_instances(
            [due, already_linked, already_matching, not_due],
            existing,
            salary_day=23,
            now=self.now,
        )

        self.assertEqual([item.parent_transaction_id for item in planned], [10])
        self.assertEqual(planned[0].window_start, date(2024, 5, 23))
        self.assertEqual(planned[0].date, date(2024, 6, 23))

    def test_instance_outside_window_does_not_block(self) -> None:
        template = make_template()
        old_instance = make_template(
            id=11, is_recurring=False, parent_transaction_id=10, date=date(2024, 4, 23)
        )

        planned = plan_pending_instances([template], [old_instance], 23, self.now)

        self.assertEqual(len(planned), 1)
        self.assertEqual(planned[0].version, 2)

    def test_invalid_salary_day_is_rejected(self) -> None:
        with self.assertRaises(ValidationError):
            plan_pending_instances([make_template()], [], 40, self.now)

    def test_unknown_interval_skips_only_that_template(self) -> None:
        weekly = make_template(id=10, recurring_interval="weekly")
        monthly = make_template(id=20, description="Internet", amount=Decimal("-30"))

        with self.assertLogs("backend.materializer", level="WARNING"):
            planned = plan_pending_instances([weekly, monthly], [], 23, self.now)

        self.assertEqual([item.parent_transaction_id for item in planned], [20])

    def test_template_without_interval_is_due_and_planned(self) -> None:
        template = make_template(recurring_interval=None, last_confirmed_date=date(2024, 5, 1))

        planned = plan_pending_instances([template], [], 23, self.now)

        self.assertTrue(is_due_in_salary_month(template, 23, self.now))
        self.assertEqual(classify_status(template, 23, self.now), DueStatus.PENDING)
        self.assertEqual([item.date for item in planned], [date(2024, 6, 1)])


class StaleSnapshotStore:
    """Store whose reads return a snapshot taken before a concurrent run."""

    def __init__(self, store: SqlLedgerStore, snapshot) -> None:
        self.store = store
        self.snapshot = snapshot

    def list_transactions(self, user_id):
        return list(self.snapshot)

    def __getattr__(self, name):
        return getattr(self.store, name)


class MaterializeWithStoreTests(unittest.TestCase):
    now = date(2024, 6, 10)

    def setUp(self) -> None:
        self.store = SqlLedgerStore(build_engine("sqlite://"))
        self.store.create_schema()
        self.user = self.store.create_user("owner@example.com", "hashed", 23)
        self.template = self.store.create_transaction(
            make_template(id=None, user_id=self.user["id"])
        )

    def test_materialize_instance_persists_new_version(self) -> None:
        first = materialize_instance(self.store, self.template.id, self.now)
        second = materialize_instance(self.store, self.template.id, self.now)

        self.assertEqual(first.version, 2)
        self.assertEqual(second.version, 3)
        self.assertEqual(first.parent_transaction_id, self.template.id)
        self.assertEqual(
            self.store.find_transaction(self.template.id), self.template
        )

    def test_materialize_instance_unknown_template(self) -> None:
        with self.assertRaises(NotFoundError):
            materialize_instance(self.store, 999, self.now)

    def test_materialize_instance_respects_owner(self) -> None:
        with self.assertRaises(NotFoundError):
            materialize_instance(self.store, self.template.id, self.now, user_id=self.user["id"] + 1)

    def test_pending_for_window_is_idempotent(self) -> None:
        created = materialize_pending_for_window(self.store, self.user["id"], 23, self.now)
        again = materialize_pending_for_window(self.store, self.user["id"], 23, self.now)

        self.assertEqual(len(created), 1)
        self.assertEqual(created[0].date, date(2024, 6, 23))
        self.assertEqual(created[0].window_start, date(2024, 5, 23))
        self.assertEqual(again, [])

    def test_racing_runs_create_one_instance_per_template(self) -> None:
        stale = self.store.list_transactions(self.user["id"])

        winner = materialize_pending_for_window(self.store, self.user["id"], 23, self.now)
        loser = materialize_pending_for_window(
            StaleSnapshotStore(self.store, stale), self.user["id"], 23, self.now
        )

        self.assertEqual(len(winner), 1)
        self.assertEqual(loser, [])
        instances = [
            row
            for row in self.store.list_transactions(self.user["id"])
            if row.parent_transaction_id == self.template.id
        ]
        self.assertEqual(len(instances), 1)

    def test_store_rejects_second_instance_for_same_window(self) -> None:
        draft = build_instance(self.template, [], self.now, window_start=date(2024, 5, 23))
        self.store.create_instance(draft)

        with self.assertRaises(DuplicateInstanceError):
            self.store.create_instance(draft)


if __name__ == "__main__":
    unittest.main()
