from __future__ import annotations

import logging
from typing import List, Optional, Protocol

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from backend.errors import (
    ConflictError,
    DuplicateInstanceError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from backend.transactions import Category, Merchant, Transaction

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_COLOR = "#6B7280"
WINDOW_CONSTRAINT = "uq_transactions_parent_window"

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("salary_day", Integer, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("color", String(7), nullable=False, server_default=DEFAULT_CATEGORY_COLOR),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_categories_user_name"),
)

merchants = Table(
    "merchants",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_merchants_user_name"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("merchant", String(255), nullable=False, server_default=""),
    Column("merchant_id", Integer, ForeignKey("merchants.id")),
    Column("description", String(500), nullable=False, server_default=""),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("date", Date, nullable=False),
    Column("is_confirmed", Boolean, nullable=False, default=False),
    Column("is_recurring", Boolean, nullable=False, default=False),
    Column("recurring_interval", String(20)),
    Column("last_confirmed_date", Date),
    Column("version", Integer, nullable=False, default=1),
    Column("parent_transaction_id", Integer, ForeignKey("transactions.id")),
    Column("window_start", Date),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint(
        "parent_transaction_id",
        "window_start",
        name=WINDOW_CONSTRAINT,
    ),
)

TRANSACTION_FIELDS = {
    "merchant",
    "merchant_id",
    "description",
    "amount",
    "date",
    "is_confirmed",
    "is_recurring",
    "recurring_interval",
    "last_confirmed_date",
    "version",
    "parent_transaction_id",
    "window_start",
}


def build_engine(database_url: str) -> Engine:
    connect_args = {}
    kwargs = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, connect_args=connect_args, **kwargs)


class LedgerStore(Protocol):
    def list_transactions(self, user_id: int) -> List[Transaction]: ...

    def list_recurring_templates(self, user_id: int) -> List[Transaction]: ...

    def find_transaction(
        self, transaction_id: int, user_id: Optional[int] = None
    ) -> Optional[Transaction]: ...

    def list_lineage(self, template_id: int) -> List[Transaction]: ...

    def create_transaction(self, data: Transaction) -> Transaction: ...

    def create_instance(self, data: Transaction) -> Transaction: ...

    def update_transaction_fields(
        self, transaction_id: int, fields: dict, user_id: Optional[int] = None
    ) -> Transaction: ...

    def list_merchants(self, user_id: int) -> List[Merchant]: ...

    def link_merchants(self, user_id: int) -> int: ...

    def list_categories(self, user_id: int) -> List[Category]: ...


class SqlLedgerStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_schema(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create schema.") from exc

    def list_transactions(self, user_id: int) -> List[Transaction]:
        return self._select_transactions(
            select(transactions)
            .where(transactions.c.user_id == user_id)
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        )

    def list_recurring_templates(self, user_id: int) -> List[Transaction]:
        return self._select_transactions(
            select(transactions)
            .where(
                transactions.c.user_id == user_id,
                transactions.c.is_recurring.is_(True),
            )
            .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        )

    def find_transaction(
        self, transaction_id: int, user_id: Optional[int] = None
    ) -> Optional[Transaction]:
        conditions = [transactions.c.id == transaction_id]
        if user_id is not None:
            conditions.append(transactions.c.user_id == user_id)
        rows = self._select_transactions(select(transactions).where(*conditions))
        return rows[0] if rows else None

    def list_lineage(self, template_id: int) -> List[Transaction]:
        return self._select_transactions(
            select(transactions)
            .where(
                or_(
                    transactions.c.id == template_id,
                    transactions.c.parent_transaction_id == template_id,
                )
            )
            .order_by(transactions.c.version.desc(), transactions.c.id.desc())
        )

    def create_transaction(self, data: Transaction) -> Transaction:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    insert(transactions)
                    .values(user_id=data.user_id, **_transaction_values(data))
                    .returning(transactions)
                ).mappings().first()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create transaction.") from exc
        if not row:
            raise StorageError("Failed to create transaction.")
        return row_to_transaction(row)

    def create_instance(self, data: Transaction) -> Transaction:
        """Insert a materialized instance.

        Raises ``DuplicateInstanceError`` when the template already has an
        instance for ``data.window_start``.
        """
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    insert(transactions)
                    .values(user_id=data.user_id, **_transaction_values(data))
                    .returning(transactions)
                ).mappings().first()
        except IntegrityError as exc:
            if data.window_start is not None and _violates_window_constraint(exc):
                raise DuplicateInstanceError(
                    data.parent_transaction_id, data.window_start
                ) from exc
            raise StorageError("Failed to create transaction instance.") from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create transaction instance.") from exc
        if not row:
            raise StorageError("Failed to create transaction instance.")
        return row_to_transaction(row)

    def update_transaction_fields(
        self, transaction_id: int, fields: dict, user_id: Optional[int] = None
    ) -> Transaction:
        unknown = set(fields) - TRANSACTION_FIELDS
        if unknown:
            raise ValidationError(f"Unknown transaction fields: {', '.join(sorted(unknown))}")
        conditions = [transactions.c.id == transaction_id]
        if user_id is not None:
            conditions.append(transactions.c.user_id == user_id)
        try:
            with self.engine.begin() as conn:
                if fields:
                    conn.execute(update(transactions).where(*conditions).values(**fields))
                row = conn.execute(
                    select(transactions).where(*conditions)
                ).mappings().first()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to update transaction.") from exc
        if not row:
            raise NotFoundError("Transaction", transaction_id)
        return row_to_transaction(row)

    def delete_transaction(self, transaction_id: int, user_id: int) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(transactions)
                    .where(
                        transactions.c.parent_transaction_id == transaction_id,
                        transactions.c.user_id == user_id,
                    )
                    .values(parent_transaction_id=None, window_start=None)
                )
                result = conn.execute(
                    transactions.delete().where(
                        transactions.c.id == transaction_id,
                        transactions.c.user_id == user_id,
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageError("Failed to delete transaction.") from exc
        if result.rowcount == 0:
            raise NotFoundError("Transaction", transaction_id)

    def link_merchants(self, user_id: int) -> int:
        """Set ``merchant_id`` on unlinked rows whose merchant name matches a
        merchant of the same user. Returns the number of rows linked."""
        matching = (
            select(merchants.c.id)
            .where(
                merchants.c.user_id == user_id,
                merchants.c.name == transactions.c.merchant,
            )
            .limit(1)
            .scalar_subquery()
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    update(transactions)
                    .where(
                        transactions.c.user_id == user_id,
                        transactions.c.merchant_id.is_(None),
                        matching.is_not(None),
                    )
                    .values(merchant_id=matching)
                )
        except SQLAlchemyError as exc:
            raise StorageError("Failed to link merchants.") from exc
        logger.info("Linked %d transactions to merchants for user %s", result.rowcount, user_id)
        return result.rowcount

    def list_merchants(self, user_id: int) -> List[Merchant]:
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(
                    select(merchants)
                    .where(merchants.c.user_id == user_id)
                    .order_by(merchants.c.name.asc())
                ).mappings().all()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to load merchants.") from exc
        return [
            Merchant(id=row["id"], name=row["name"], category_id=row["category_id"])
            for row in rows
        ]

    def create_merchant(
        self, user_id: int, name: str, category_id: Optional[int] = None
    ) -> Merchant:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    insert(merchants)
                    .values(user_id=user_id, name=name, category_id=category_id)
                    .returning(merchants.c.id, merchants.c.name, merchants.c.category_id)
                ).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("Merchant already exists.") from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create merchant.") from exc
        return Merchant(id=row["id"], name=row["name"], category_id=row["category_id"])

    def list_categories(self, user_id: int) -> List[Category]:
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(
                    select(categories)
                    .where(categories.c.user_id == user_id)
                    .order_by(categories.c.name.asc())
                ).mappings().all()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to load categories.") from exc
        return [Category(id=row["id"], name=row["name"], color=row["color"]) for row in rows]

    def create_category(
        self, user_id: int, name: str, color: str = DEFAULT_CATEGORY_COLOR
    ) -> Category:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    insert(categories)
                    .values(user_id=user_id, name=name, color=color)
                    .returning(categories.c.id, categories.c.name, categories.c.color)
                ).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("Category already exists.") from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create category.") from exc
        return Category(id=row["id"], name=row["name"], color=row["color"])

    def create_user(self, email: str, hashed_password: str, salary_day: int) -> dict:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(
                    insert(users)
                    .values(email=email, hashed_password=hashed_password, salary_day=salary_day)
                    .returning(users.c.id, users.c.email, users.c.salary_day, users.c.created_at)
                ).mappings().first()
        except IntegrityError as exc:
            raise ConflictError("Email already exists.") from exc
        except SQLAlchemyError as exc:
            raise StorageError("Failed to create user.") from exc
        return dict(row)

    def find_user(self, user_id: int) -> Optional[dict]:
        return self._select_user(users.c.id == user_id)

    def find_user_by_email(self, email: str) -> Optional[dict]:
        return self._select_user(users.c.email == email)

    def update_salary_day(self, user_id: int, salary_day: int) -> dict:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    update(users).where(users.c.id == user_id).values(salary_day=salary_day)
                )
        except SQLAlchemyError as exc:
            raise StorageError("Failed to update user settings.") from exc
        user = self.find_user(user_id)
        if not user:
            raise NotFoundError("User", user_id)
        return user

    def _select_user(self, condition) -> Optional[dict]:
        try:
            with self.engine.begin() as conn:
                row = conn.execute(select(users).where(condition)).mappings().first()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to load user.") from exc
        return dict(row) if row else None

    def _select_transactions(self, stmt) -> List[Transaction]:
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            logger.exception("Transaction query failed")
            raise StorageError("Failed to load transactions.") from exc
        return [row_to_transaction(row) for row in rows]


def row_to_transaction(row) -> Transaction:
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        merchant=row["merchant"],
        merchant_id=row["merchant_id"],
        description=row["description"],
        amount=row["amount"],
        date=row["date"],
        is_confirmed=bool(row["is_confirmed"]),
        is_recurring=bool(row["is_recurring"]),
        recurring_interval=row["recurring_interval"],
        last_confirmed_date=row["last_confirmed_date"],
        version=row["version"],
        parent_transaction_id=row["parent_transaction_id"],
        window_start=row["window_start"],
        created_at=row["created_at"],
    )


def _violates_window_constraint(exc: IntegrityError) -> bool:
    diag = getattr(exc.orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    if constraint:
        return constraint == WINDOW_CONSTRAINT
    # sqlite reports the columns instead of the constraint name.
    message = str(exc.orig)
    return WINDOW_CONSTRAINT in message or (
        "UNIQUE" in message.upper()
        and "parent_transaction_id" in message
        and "window_start" in message
    )


def _transaction_values(data: Transaction) -> dict:
    return {name: getattr(data, name) for name in TRANSACTION_FIELDS}

