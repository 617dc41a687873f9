import unittest
from datetime import date
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError

from backend.errors import (
    ConflictError,
    DuplicateInstanceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from backend.storage import SqlLedgerStore, build_engine, transactions
from backend.transactions import Transaction


class SqlLedgerStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SqlLedgerStore(build_engine("sqlite://"))
        self.store.create_schema()
        self.user_id = self.store.create_user("a@example.com", "hashed", 23)["id"]
        self.other_id = self.store.create_user("b@example.com", "hashed", 1)["id"]

    def add(self, **fields) -> Transaction:
        values = dict(user_id=self.user_id, amount=Decimal("-10"), date=date(2024, 6, 1))
        values.update(fields)
        return self.store.create_transaction(Transaction(**values))

    def test_round_trips_transaction_fields(self) -> None:
        created = self.add(
            merchant="Landlord",
            description="Rent",
            amount=Decimal("-850.25"),
            is_recurring=True,
            recurring_interval="monthly",
            last_confirmed_date=date(2024, 5, 23),
        )

        loaded = self.store.find_transaction(created.id)

        self.assertEqual(loaded.amount, Decimal("-850.25"))
        self.assertEqual(loaded.merchant, "Landlord")
        self.assertTrue(loaded.is_recurring)
        self.assertEqual(loaded.recurring_interval, "monthly")
        self.assertEqual(loaded.last_confirmed_date, date(2024, 5, 23))
        self.assertEqual(loaded.version, 1)
        self.assertIsNotNone(loaded.created_at)

    def test_lists_are_scoped_to_user(self) -> None:
        self.add()
        self.add(is_recurring=True, recurring_interval="yearly")
        self.add(user_id=self.other_id)

        self.assertEqual(len(self.store.list_transactions(self.user_id)), 2)
        self.assertEqual(len(self.store.list_recurring_templates(self.user_id)), 1)
        self.assertEqual(len(self.store.list_transactions(self.other_id)), 1)

    def test_find_transaction_checks_owner(self) -> None:
        created = self.add()

        self.assertIsNone(self.store.find_transaction(created.id, user_id=self.other_id))

    def test_lineage_is_ordered_by_version(self) -> None:
        template = self.add(is_recurring=True, recurring_interval="monthly")
        self.add(parent_transaction_id=template.id, version=2)
        self.add(parent_transaction_id=template.id, version=3)
        self.add()

        lineage = self.store.list_lineage(template.id)

        self.assertEqual([row.version for row in lineage], [3, 2, 1])

    def test_update_fields(self) -> None:
        created = self.add()

        updated = self.store.update_transaction_fields(
            created.id, {"is_confirmed": True, "last_confirmed_date": date(2024, 6, 1)}
        )

        self.assertTrue(updated.is_confirmed)
        self.assertEqual(updated.last_confirmed_date, date(2024, 6, 1))

    def test_update_missing_transaction(self) -> None:
        with self.assertRaises(NotFoundError):
            self.store.update_transaction_fields(999, {"is_confirmed": True})

    def test_update_rejects_unknown_fields(self) -> None:
        created = self.add()

        with self.assertRaises(ValidationError):
            self.store.update_transaction_fields(created.id, {"user_id": self.other_id})

    def test_deleting_template_detaches_instances(self) -> None:
        template = self.add(is_recurring=True, recurring_interval="monthly")
        instance = self.add(
            parent_transaction_id=template.id, version=2, window_start=date(2024, 5, 23)
        )

        self.store.delete_transaction(template.id, self.user_id)

        detached = self.store.find_transaction(instance.id)
        self.assertIsNone(detached.parent_transaction_id)
        self.assertIsNone(detached.window_start)
        with self.assertRaises(NotFoundError):
            self.store.delete_transaction(template.id, self.user_id)

    def test_categories_and_merchants(self) -> None:
        category = self.store.create_category(self.user_id, "Housing", "#FF0000")
        merchant = self.store.create_merchant(self.user_id, "Landlord", category.id)

        self.assertEqual(self.store.list_categories(self.user_id), [category])
        self.assertEqual(self.store.list_merchants(self.user_id), [merchant])
        self.assertEqual(self.store.list_categories(self.other_id), [])
        with self.assertRaises(ConflictError):
            self.store.create_category(self.user_id, "Housing")

    def test_link_merchants_by_name(self) -> None:
        landlord = self.store.create_merchant(self.user_id, "Landlord")
        grocer = self.store.create_merchant(self.user_id, "Grocer")
        self.store.create_merchant(self.other_id, "Kiosk")
        free_text = self.add(merchant="Landlord")
        already_linked = self.add(merchant="Landlord", merchant_id=grocer.id)
        unknown = self.add(merchant="Kiosk")
        foreign = self.add(user_id=self.other_id, merchant="Landlord")

        self.assertEqual(self.store.link_merchants(self.user_id), 1)

        self.assertEqual(self.store.find_transaction(free_text.id).merchant_id, landlord.id)
        self.assertEqual(self.store.find_transaction(already_linked.id).merchant_id, grocer.id)
        self.assertIsNone(self.store.find_transaction(unknown.id).merchant_id)
        self.assertIsNone(self.store.find_transaction(foreign.id).merchant_id)
        self.assertEqual(self.store.link_merchants(self.user_id), 0)

    def test_database_failures_become_storage_errors(self) -> None:
        transactions.drop(self.store.engine)

        with self.assertLogs("backend.storage", level="ERROR"):
            with self.assertRaises(StorageError) as ctx:
                self.store.list_transactions(self.user_id)

        self.assertIsInstance(ctx.exception.__cause__, SQLAlchemyError)

    def test_instance_integrity_errors_outside_window_key(self) -> None:
        template = self.add(is_recurring=True, recurring_interval="monthly")
        broken = Transaction(
            user_id=self.user_id,
            amount=Decimal("-10"),
            date=None,
            parent_transaction_id=template.id,
            version=2,
            window_start=date(2024, 5, 23),
        )

        with self.assertRaises(StorageError) as ctx:
            self.store.create_instance(broken)

        self.assertNotIsInstance(ctx.exception, DuplicateInstanceError)

    def test_duplicate_email(self) -> None:
        with self.assertRaises(ConflictError):
            self.store.create_user("a@example.com", "hashed", 1)

    def test_update_salary_day(self) -> None:
        user = self.store.update_salary_day(self.user_id, 15)

        self.assertEqual(user["salary_day"], 15)


if __name__ == "__main__":
    unittest.main()
