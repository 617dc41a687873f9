import logging
import os
from datetime import date, datetime
from datetime import date as Date
from decimal import Decimal

import bcrypt
from fastapi import FastAPI, HTTPException, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.due_status import classify_status, confirmation_fields
from backend.errors import (
    ConflictError,
    LedgerError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from backend.ledger_aggregator import (
    UPCOMING_HORIZON_DAYS,
    aggregate_ledger,
    build_dashboard,
    monthly_statistics,
    statistics_range,
)
from backend.materializer import materialize_instance, materialize_pending_for_window
from backend.recurrence import RecurringInterval
from backend.salary_month import SalaryMonth, compute_salary_month, validate_salary_day
from backend.storage import DEFAULT_CATEGORY_COLOR, SqlLedgerStore, build_engine
from backend.transactions import Transaction

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./ledger.db")
engine = build_engine(database_url)
store = SqlLedgerStore(engine)


def get_default_salary_day() -> int:
    raw = os.getenv("DEFAULT_SALARY_DAY", "1")
    try:
        return validate_salary_day(int(raw))
    except ValueError:
        return 1


def get_upcoming_horizon_days() -> int:
    raw = os.getenv("UPCOMING_HORIZON_DAYS", str(UPCOMING_HORIZON_DAYS))
    try:
        value = int(raw)
    except ValueError:
        return UPCOMING_HORIZON_DAYS
    return value if value > 0 else UPCOMING_HORIZON_DAYS


DEFAULT_SALARY_DAY = get_default_salary_day()
UPCOMING_DAYS = get_upcoming_horizon_days()


@app.on_event("startup")
def init_db() -> None:
    store.create_schema()


@app.exception_handler(StorageError)
def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


def current_date() -> date:
    return date.today()


class CredentialsPayload(BaseModel):
    email: str
    password: str
    salary_day: int | None = None


class UserResponse(BaseModel):
    id: int
    email: str
    salary_day: int
    created_at: datetime | None = None


class UserSettingsPayload(BaseModel):
    salary_day: int


class CategoryPayload(BaseModel):
    name: str
    color: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        payload.color = (payload.color or DEFAULT_CATEGORY_COLOR).strip()
        if len(payload.color) != 7 or not payload.color.startswith("#"):
            raise ValueError("Category color must be a hex value like #A7C7E7.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    name: str
    color: str


class MerchantPayload(BaseModel):
    name: str
    category_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "MerchantPayload") -> "MerchantPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Merchant name required.")
        return payload


class MerchantResponse(BaseModel):
    id: int
    name: str
    category_id: int | None = None


class TransactionPayload(BaseModel):
    merchant: str
    merchant_id: int | None = None
    description: str | None = None
    amount: Decimal
    date: date
    is_confirmed: bool = False
    is_recurring: bool = False
    recurring_interval: str | None = None
    last_confirmed_date: date | None = None
    parent_transaction_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.merchant = payload.merchant.strip()
        payload.description = payload.description.strip() if payload.description else ""
        if payload.is_recurring:
            if payload.parent_transaction_id is not None:
                raise ValueError("Materialized instances cannot be recurring.")
            payload.recurring_interval = RecurringInterval.validate(payload.recurring_interval)
        else:
            payload.recurring_interval = None
        if payload.is_confirmed and payload.last_confirmed_date is None:
            payload.last_confirmed_date = payload.date
        if not payload.is_confirmed:
            payload.last_confirmed_date = None
        return payload


class TransactionUpdatePayload(BaseModel):
    merchant: str | None = None
    merchant_id: int | None = None
    description: str | None = None
    amount: Decimal | None = None
    last_confirmed_date: date | None = None
    is_confirmed: bool | None = None
    is_recurring: bool | None = None
    recurring_interval: str | None = None
    date: Date | None = None

    def to_fields(self, existing: Transaction) -> dict:
        fields = self.model_dump(exclude_unset=True)
        for key in ("merchant", "description"):
            if key in fields:
                fields[key] = (fields[key] or "").strip()
        for key in ("amount", "date", "is_recurring"):
            if key in fields and fields[key] is None:
                raise ValueError(f"{key} cannot be empty.")
        is_recurring = fields.get("is_recurring", existing.is_recurring)
        if is_recurring:
            if existing.parent_transaction_id is not None:
                raise ValueError("Materialized instances cannot be recurring.")
            fields["recurring_interval"] = RecurringInterval.validate(
                fields.get("recurring_interval", existing.recurring_interval)
            )
        elif "is_recurring" in fields or "recurring_interval" in fields:
            fields["recurring_interval"] = None
        anchor_sent = "last_confirmed_date" in fields
        anchor = fields.pop("last_confirmed_date", None)
        if fields.get("is_confirmed") is not None:
            target = existing.with_fields(date=fields.get("date", existing.date))
            fields.update(
                confirmation_fields(target, fields.pop("is_confirmed"), anchor)
            )
            return fields
        fields.pop("is_confirmed", None)
        if anchor_sent:
            if not existing.is_confirmed:
                raise ValueError("last_confirmed_date can only be set on confirmed transactions.")
            if anchor is None:
                raise ValueError("last_confirmed_date cannot be empty.")
            fields["last_confirmed_date"] = anchor
        return fields


class ConfirmationPayload(BaseModel):
    confirmed: bool = True
    confirmed_on: date | None = None


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    merchant: str
    merchant_id: int | None = None
    description: str
    amount: Decimal
    date: date
    is_confirmed: bool
    is_recurring: bool
    recurring_interval: str | None = None
    last_confirmed_date: date | None = None
    version: int
    parent_transaction_id: int | None = None
    created_at: datetime | None = None
    status: str


class SalaryMonthResponse(BaseModel):
    start_date: date
    end_date: date
    salary_day: int


class TotalsResponse(BaseModel):
    current_income: Decimal
    current_expenses: Decimal
    total_income: Decimal
    total_expenses: Decimal
    total_pending_expenses: Decimal
    available: Decimal
    start_date: date
    end_date: date


class CategoryDistributionEntry(BaseModel):
    name: str
    value: Decimal
    color: str


class UpcomingPaymentResponse(BaseModel):
    id: int
    amount: Decimal
    date: date
    merchant: str
    description: str


class MonthlyStatisticResponse(BaseModel):
    date: str
    amount: Decimal
    category: str
    color: str


class LinkMerchantsResponse(BaseModel):
    updated: int


class DashboardResponse(BaseModel):
    start_date: date
    end_date: date
    monthly_income: Decimal
    monthly_expenses: Decimal
    recurring_expenses: Decimal
    savings_rate: Decimal
    total_balance: Decimal
    recurring_transactions: list[UpcomingPaymentResponse]
    category_distribution: list[CategoryDistributionEntry]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def http_error(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def get_user(x_user_id: str | None) -> dict:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    user = store.find_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    return user


def user_response(user: dict) -> UserResponse:
    return UserResponse(
        id=user["id"],
        email=user["email"],
        salary_day=user["salary_day"],
        created_at=user["created_at"],
    )


def transaction_response(
    txn: Transaction, salary_day: int, window: SalaryMonth
) -> TransactionResponse:
    status = classify_status(txn, salary_day, window.start_date, window=window)
    return TransactionResponse(
        id=txn.id,
        user_id=txn.user_id,
        merchant=txn.merchant,
        merchant_id=txn.merchant_id,
        description=txn.description,
        amount=txn.amount,
        date=txn.date,
        is_confirmed=txn.is_confirmed,
        is_recurring=txn.is_recurring,
        recurring_interval=txn.recurring_interval,
        last_confirmed_date=txn.last_confirmed_date,
        version=txn.version,
        parent_transaction_id=txn.parent_transaction_id,
        created_at=txn.created_at,
        status=status.value,
    )


def user_window(user: dict) -> tuple[int, SalaryMonth]:
    salary_day = user["salary_day"]
    try:
        return salary_day, compute_salary_month(salary_day, current_date())
    except ValidationError as exc:
        raise http_error(exc) from exc


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    salary_day = payload.salary_day if payload.salary_day is not None else DEFAULT_SALARY_DAY
    try:
        salary_day = validate_salary_day(salary_day)
        user = store.create_user(email, hash_password(payload.password), salary_day)
    except (ValidationError, ConflictError) as exc:
        raise http_error(exc) from exc
    logger.info("Created user %s", user["id"])
    return user_response(user)


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    user = store.find_user_by_email(email)
    if not user or not verify_password(payload.password, user["hashed_password"]):
        raise HTTPException(status_code=401, detail="Invalid credentials.")
    return user_response(user)


@app.get("/users/me/settings", response_model=UserResponse)
def get_user_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserResponse:
    return user_response(get_user(x_user_id))


@app.put("/users/me/settings", response_model=UserResponse)
def update_user_settings(
    payload: UserSettingsPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> UserResponse:
    user = get_user(x_user_id)
    try:
        salary_day = validate_salary_day(payload.salary_day)
    except ValidationError as exc:
        raise http_error(exc) from exc
    return user_response(store.update_salary_day(user["id"], salary_day))


@app.get("/salary-month", response_model=SalaryMonthResponse)
def salary_month(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> SalaryMonthResponse:
    _, window = user_window(get_user(x_user_id))
    return SalaryMonthResponse(
        start_date=window.start_date,
        end_date=window.end_date,
        salary_day=window.salary_day,
    )


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user = get_user(x_user_id)
    return [
        CategoryResponse(id=category.id, name=category.name, color=category.color)
        for category in store.list_categories(user["id"])
    ]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CategoryResponse:
    user = get_user(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        category = store.create_category(user["id"], payload.name, payload.color)
    except ConflictError as exc:
        raise http_error(exc) from exc
    return CategoryResponse(id=category.id, name=category.name, color=category.color)


@app.get("/merchants", response_model=list[MerchantResponse])
def list_merchants(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[MerchantResponse]:
    user = get_user(x_user_id)
    return [
        MerchantResponse(id=merchant.id, name=merchant.name, category_id=merchant.category_id)
        for merchant in store.list_merchants(user["id"])
    ]


@app.post("/merchants", response_model=MerchantResponse)
def create_merchant(
    payload: MerchantPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> MerchantResponse:
    user = get_user(x_user_id)
    try:
        payload = MerchantPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.category_id is not None:
        known = {category.id for category in store.list_categories(user["id"])}
        if payload.category_id not in known:
            raise HTTPException(status_code=404, detail="Category not found.")
    try:
        merchant = store.create_merchant(user["id"], payload.name, payload.category_id)
    except ConflictError as exc:
        raise http_error(exc) from exc
    return MerchantResponse(id=merchant.id, name=merchant.name, category_id=merchant.category_id)


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user = get_user(x_user_id)
    salary_day, window = user_window(user)
    return [
        transaction_response(txn, salary_day, window)
        for txn in store.list_transactions(user["id"])
    ]


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user = get_user(x_user_id)
    salary_day, window = user_window(user)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    version = 1
    if payload.parent_transaction_id is not None:
        parent = store.find_transaction(payload.parent_transaction_id, user_id=user["id"])
        if not parent:
            raise HTTPException(status_code=404, detail="Parent transaction not found.")
        if not parent.is_recurring:
            raise HTTPException(
                status_code=400, detail="Parent transaction must be a recurring template."
            )
        version = max(row.version for row in store.list_lineage(parent.id)) + 1

    created = store.create_transaction(
        Transaction(
            user_id=user["id"],
            merchant=payload.merchant,
            merchant_id=payload.merchant_id,
            description=payload.description,
            amount=payload.amount,
            date=payload.date,
            is_confirmed=payload.is_confirmed,
            is_recurring=payload.is_recurring,
            recurring_interval=payload.recurring_interval,
            last_confirmed_date=payload.last_confirmed_date,
            version=version,
            parent_transaction_id=payload.parent_transaction_id,
        )
    )
    return transaction_response(created, salary_day, window)


@app.get("/transactions/recurring", response_model=list[TransactionResponse])
def list_recurring_transactions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user = get_user(x_user_id)
    salary_day, window = user_window(user)
    return [
        transaction_response(txn, salary_day, window)
        for txn in store.list_recurring_templates(user["id"])
    ]


@app.get("/transactions/totals", response_model=TotalsResponse)
def transaction_totals(
    salary_day: int | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TotalsResponse:
    user = get_user(x_user_id)
    resolved_day = salary_day if salary_day is not None else user["salary_day"]
    today = current_date()
    try:
        window = compute_salary_month(resolved_day, today)
    except ValidationError as exc:
        raise http_error(exc) from exc
    totals = aggregate_ledger(store.list_transactions(user["id"]), resolved_day, today)
    return TotalsResponse(
        current_income=totals.current_income,
        current_expenses=totals.current_expenses,
        total_income=totals.total_income,
        total_expenses=totals.total_expenses,
        total_pending_expenses=totals.total_pending_expenses,
        available=totals.available,
        start_date=window.start_date,
        end_date=window.end_date,
    )


@app.post("/transactions/link-merchants", response_model=LinkMerchantsResponse)
def link_transaction_merchants(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> LinkMerchantsResponse:
    user = get_user(x_user_id)
    return LinkMerchantsResponse(updated=store.link_merchants(user["id"]))


@app.post("/transactions/create-pending", response_model=list[TransactionResponse])
def create_pending_transactions(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user = get_user(x_user_id)
    salary_day, window = user_window(user)
    created = materialize_pending_for_window(store, user["id"], salary_day, current_date())
    return [transaction_response(txn, salary_day, window) for txn in created]


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user = get_user(x_user_id)
    salary_day, window = user_window(user)
    txn = store.find_transaction(transaction_id, user_id=user["id"])
    if not txn:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(txn, salary_day, window)


@app.patch("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user = get_user(x_user_id)
    salary_day, window = user_window(user)
    existing = store.find_transaction(transaction_id, user_id=user["id"])
    if not existing:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    try:
        fields = payload.to_fields(existing)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        updated = store.update_transaction_fields(transaction_id, fields, user_id=user["id"])
    except NotFoundError as exc:
        raise http_error(exc) from exc
    return transaction_response(updated, salary_day, window)


@app.post("/transactions/{transaction_id}/confirm", response_model=TransactionResponse)
def confirm_transaction(
    transaction_id: int,
    payload: ConfirmationPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user = get_user(x_user_id)
    salary_day, window = user_window(user)
    existing = store.find_transaction(transaction_id, user_id=user["id"])
    if not existing:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    fields = confirmation_fields(existing, payload.confirmed, payload.confirmed_on)
    try:
        updated = store.update_transaction_fields(transaction_id, fields, user_id=user["id"])
    except NotFoundError as exc:
        raise http_error(exc) from exc
    return transaction_response(updated, salary_day, window)


@app.post("/transactions/{transaction_id}/create-instance", response_model=TransactionResponse)
def create_transaction_instance(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user = get_user(x_user_id)
    salary_day, window = user_window(user)
    try:
        instance = materialize_instance(
            store, transaction_id, datetime.now(), user_id=user["id"]
        )
    except (ValidationError, NotFoundError, ConflictError) as exc:
        raise http_error(exc) from exc
    return transaction_response(instance, salary_day, window)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> dict:
    user = get_user(x_user_id)
    try:
        store.delete_transaction(transaction_id, user["id"])
    except NotFoundError as exc:
        raise http_error(exc) from exc
    return {"status": "deleted"}


@app.get("/dashboard", response_model=DashboardResponse)
def dashboard(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> DashboardResponse:
    user = get_user(x_user_id)
    salary_day, _ = user_window(user)
    summary = build_dashboard(
        store.list_transactions(user["id"]),
        store.list_merchants(user["id"]),
        store.list_categories(user["id"]),
        salary_day,
        current_date(),
        horizon_days=UPCOMING_DAYS,
    )
    return DashboardResponse(
        start_date=summary.window.start_date,
        end_date=summary.window.end_date,
        monthly_income=summary.monthly_income,
        monthly_expenses=summary.monthly_expenses,
        recurring_expenses=summary.recurring_expenses,
        savings_rate=summary.savings_rate,
        total_balance=summary.total_balance,
        recurring_transactions=[
            UpcomingPaymentResponse(
                id=item.transaction.id,
                amount=abs(item.transaction.amount),
                date=item.due_date,
                merchant=item.transaction.merchant,
                description=item.transaction.description,
            )
            for item in summary.upcoming
        ],
        category_distribution=[
            CategoryDistributionEntry(name=item.name, value=item.value, color=item.color)
            for item in summary.category_distribution
        ],
    )


@app.get("/statistics", response_model=list[MonthlyStatisticResponse])
def statistics(
    time_range: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    category_id: int | None = None,
    merchant_id: int | None = None,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[MonthlyStatisticResponse]:
    user = get_user(x_user_id)
    try:
        start, end = statistics_range(time_range, current_date(), start_date, end_date)
    except ValidationError as exc:
        raise http_error(exc) from exc
    rows = monthly_statistics(
        store.list_transactions(user["id"]),
        store.list_merchants(user["id"]),
        store.list_categories(user["id"]),
        start,
        end,
        category_id=category_id,
        merchant_id=merchant_id,
    )
    return [
        MonthlyStatisticResponse(
            date=item.month, amount=item.amount, category=item.category, color=item.color
        )
        for item in rows
    ]
