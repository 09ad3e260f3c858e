import os
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Sequence

import structlog
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    and_,
    create_engine,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine

from household_ledger.currency_conversion import (
    MISSING_RATES_MESSAGE,
    ConversionGap,
    CurrencyConverter,
    ExchangeRate,
    normalize_currency,
)
from household_ledger.dates import ReportPeriod, to_utc
from household_ledger.logging_config import configure_logging
from household_ledger.report_aggregator import (
    CategoryLabel,
    CategoryType,
    LedgerEntry,
    build_category_distribution,
    build_period_summary,
)
from household_ledger.transaction_rules import (
    BookReferences,
    TransactionDraft,
    TransactionType,
    ValidationError,
    validate_transaction,
)

configure_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = structlog.get_logger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./household_ledger.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()


def get_system_base_currency() -> str:
    raw = os.getenv("DEFAULT_BASE_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


SYSTEM_BASE_CURRENCY = get_system_base_currency()
RATE_QUANTUM = Decimal("0.000001")

books = Table(
    "books",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(200), nullable=False),
    Column("base_currency", String(3), nullable=False, server_default=SYSTEM_BASE_CURRENCY),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("book_id", Integer, ForeignKey("books.id"), nullable=False),
    Column("name_en", String(200), nullable=False),
    Column("name_zh_hans", String(200), nullable=False),
    Column("type", String(20), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("book_id", Integer, ForeignKey("books.id"), nullable=False),
    Column("parent_id", Integer, ForeignKey("categories.id")),
    Column("name_en", String(200), nullable=False),
    Column("name_zh_hans", String(200), nullable=False),
    Column("type", String(20), nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("book_id", Integer, ForeignKey("books.id"), nullable=False),
    Column("type", String(30), nullable=False),
    Column("date_utc", DateTime, nullable=False),
    Column("amount", Numeric(18, 4), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("to_account_id", Integer, ForeignKey("accounts.id")),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("note", String(500)),
    Column("is_refund", Boolean, nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("base_currency", String(3), nullable=False),
    Column("quote_currency", String(3), nullable=False),
    Column("rate", Numeric(18, 6), nullable=False),
    Column("effective_date", DateTime, nullable=False),
    Column("source", String(120), nullable=False),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


@dataclass(frozen=True)
class DatabaseRateSource:
    engine: Engine

    def load_rates(
        self, base_currency: str, currencies: Sequence[str], before: datetime
    ) -> list[ExchangeRate]:
        stmt = (
            select(exchange_rates)
            .where(
                exchange_rates.c.effective_date < before,
                or_(
                    and_(
                        exchange_rates.c.base_currency.in_(currencies),
                        exchange_rates.c.quote_currency == base_currency,
                    ),
                    and_(
                        exchange_rates.c.base_currency == base_currency,
                        exchange_rates.c.quote_currency.in_(currencies),
                    ),
                ),
            )
            .order_by(exchange_rates.c.id.asc())
        )
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [
            ExchangeRate(
                base_currency=row["base_currency"],
                quote_currency=row["quote_currency"],
                rate=coerce_decimal(row["rate"]),
                effective_date=row["effective_date"],
                source=row["source"],
            )
            for row in rows
        ]


CONVERTER = CurrencyConverter(rate_source=DatabaseRateSource(engine))


class BookPayload(BaseModel):
    name: str
    base_currency: str | None = None


class BookResponse(BaseModel):
    id: int
    name: str
    base_currency: str


class AccountPayload(BaseModel):
    name_en: str
    name_zh_hans: str | None = None
    type: str = "cash"
    currency: str


class AccountResponse(AccountPayload):
    id: int
    book_id: int
    name_zh_hans: str


class CategoryPayload(BaseModel):
    name_en: str
    name_zh_hans: str | None = None
    type: str
    parent_id: int | None = None
    is_active: bool = True


class CategoryResponse(CategoryPayload):
    id: int
    book_id: int
    name_zh_hans: str


class TransactionPayload(BaseModel):
    type: str
    date_utc: datetime
    amount: Decimal
    currency: str
    account_id: int | None = None
    to_account_id: int | None = None
    category_id: int | None = None
    note: str | None = None
    is_refund: bool = False


class TransactionResponse(BaseModel):
    id: int
    book_id: int
    type: str
    date_utc: datetime
    amount: Decimal
    currency: str
    account_id: int
    to_account_id: int | None = None
    category_id: int | None = None
    note: str | None = None
    is_refund: bool
    created_at: datetime | None = None


class ExchangeRatePayload(BaseModel):
    base_currency: str
    quote_currency: str
    rate: Decimal
    effective_date: datetime
    source: str = "manual"

    @classmethod
    def validate_payload(cls, payload: "ExchangeRatePayload") -> "ExchangeRatePayload":
        payload.base_currency = normalize_currency(payload.base_currency)
        payload.quote_currency = normalize_currency(payload.quote_currency)
        if payload.base_currency == payload.quote_currency:
            raise ValueError("Base and quote currency must differ.")
        payload.rate = payload.rate.quantize(RATE_QUANTUM)
        if payload.rate <= 0:
            raise ValueError("Rate must be greater than zero.")
        payload.effective_date = to_utc(payload.effective_date)
        payload.source = payload.source.strip() or "manual"
        return payload


class ExchangeRateResponse(ExchangeRatePayload):
    id: int


class SummaryReportResponse(BaseModel):
    base_currency: str
    period_start_utc: datetime
    period_end_exclusive_utc: datetime
    income_total: Decimal
    expense_total: Decimal
    net_total: Decimal


class CategoryDistributionItemResponse(BaseModel):
    category_id: int
    category_name_en: str
    category_name_zh_hans: str
    total_base_amount: Decimal


class CategoryDistributionResponse(BaseModel):
    base_currency: str
    period_start_utc: datetime
    period_end_exclusive_utc: datetime
    type: str
    items: list[CategoryDistributionItemResponse]


def coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def get_book(conn: Connection, book_id: int) -> dict:
    row = conn.execute(select(books).where(books.c.id == book_id)).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Book not found.")
    return dict(row)


def load_book_references(conn: Connection, book_id: int) -> BookReferences:
    account_ids = conn.execute(
        select(accounts.c.id).where(accounts.c.book_id == book_id)
    ).scalars().all()
    category_ids = conn.execute(
        select(categories.c.id).where(categories.c.book_id == book_id)
    ).scalars().all()
    return BookReferences(account_ids=frozenset(account_ids), category_ids=frozenset(category_ids))


def load_ledger_entries(
    conn: Connection, book_id: int, period: ReportPeriod, types: Sequence[str]
) -> list[LedgerEntry]:
    stmt = (
        select(
            transactions.c.id,
            transactions.c.type,
            transactions.c.date_utc,
            transactions.c.amount,
            transactions.c.currency,
            transactions.c.category_id,
        )
        .where(
            transactions.c.book_id == book_id,
            transactions.c.date_utc >= period.start,
            transactions.c.date_utc < period.end_exclusive,
            transactions.c.type.in_(types),
        )
        .order_by(transactions.c.id.asc())
    )
    return [
        LedgerEntry(
            id=row["id"],
            type=row["type"],
            date=row["date_utc"],
            amount=coerce_decimal(row["amount"]),
            currency=row["currency"],
            category_id=row["category_id"],
        )
        for row in conn.execute(stmt).mappings().all()
    ]


def missing_rates_error(exc: ConversionGap) -> HTTPException:
    return HTTPException(
        status_code=422,
        detail={"error": MISSING_RATES_MESSAGE, "missing_rates": exc.missing_rates},
    )


def build_summary_response(book_id: int, period: ReportPeriod) -> SummaryReportResponse:
    with engine.begin() as conn:
        book = get_book(conn, book_id)
        entries = load_ledger_entries(
            conn, book_id, period, (TransactionType.INCOME, TransactionType.EXPENSE)
        )
    try:
        summary = build_period_summary(entries, period, book["base_currency"], CONVERTER)
    except ConversionGap as exc:
        raise missing_rates_error(exc) from exc
    return SummaryReportResponse(
        base_currency=summary.base_currency,
        period_start_utc=summary.period_start,
        period_end_exclusive_utc=summary.period_end_exclusive,
        income_total=summary.income_total,
        expense_total=summary.expense_total,
        net_total=summary.net_total,
    )


def transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        book_id=row["book_id"],
        type=row["type"],
        date_utc=row["date_utc"],
        amount=row["amount"],
        currency=row["currency"],
        account_id=row["account_id"],
        to_account_id=row["to_account_id"],
        category_id=row["category_id"],
        note=row["note"],
        is_refund=row["is_refund"],
        created_at=row["created_at"],
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/books", response_model=BookResponse)
def create_book(payload: BookPayload) -> BookResponse:
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Book name required.")
    try:
        base_currency = (
            normalize_currency(payload.base_currency)
            if payload.base_currency
            else SYSTEM_BASE_CURRENCY
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(books)
            .values(name=name, base_currency=base_currency)
            .returning(books.c.id, books.c.name, books.c.base_currency)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create book.")
    return BookResponse(**row)


@app.get("/books/{book_id}", response_model=BookResponse)
def read_book(book_id: int) -> BookResponse:
    with engine.begin() as conn:
        book = get_book(conn, book_id)
    return BookResponse(id=book["id"], name=book["name"], base_currency=book["base_currency"])


@app.get("/books/{book_id}/accounts", response_model=list[AccountResponse])
def list_accounts(book_id: int) -> list[AccountResponse]:
    with engine.begin() as conn:
        get_book(conn, book_id)
        rows = conn.execute(
            select(accounts).where(accounts.c.book_id == book_id).order_by(accounts.c.id.asc())
        ).mappings().all()
    return [
        AccountResponse(
            id=row["id"],
            book_id=row["book_id"],
            name_en=row["name_en"],
            name_zh_hans=row["name_zh_hans"],
            type=row["type"],
            currency=row["currency"],
        )
        for row in rows
    ]


@app.post("/books/{book_id}/accounts", response_model=AccountResponse)
def create_account(book_id: int, payload: AccountPayload) -> AccountResponse:
    name_en = payload.name_en.strip()
    if not name_en:
        raise HTTPException(status_code=400, detail="Account name required.")
    try:
        currency = normalize_currency(payload.currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        get_book(conn, book_id)
        row = conn.execute(
            insert(accounts)
            .values(
                book_id=book_id,
                name_en=name_en,
                name_zh_hans=(payload.name_zh_hans or name_en).strip(),
                type=payload.type.strip().lower(),
                currency=currency,
            )
            .returning(
                accounts.c.id,
                accounts.c.book_id,
                accounts.c.name_en,
                accounts.c.name_zh_hans,
                accounts.c.type,
                accounts.c.currency,
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create account.")
    return AccountResponse(**row)


@app.put("/books/{book_id}/accounts/{account_id}", response_model=AccountResponse)
def update_account(book_id: int, account_id: int, payload: AccountPayload) -> AccountResponse:
    name_en = payload.name_en.strip()
    if not name_en:
        raise HTTPException(status_code=400, detail="Account name required.")
    try:
        currency = normalize_currency(payload.currency)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        get_book(conn, book_id)
        row = conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id, accounts.c.book_id == book_id)
            .values(
                name_en=name_en,
                name_zh_hans=(payload.name_zh_hans or name_en).strip(),
                type=payload.type.strip().lower(),
                currency=currency,
            )
            .returning(
                accounts.c.id,
                accounts.c.book_id,
                accounts.c.name_en,
                accounts.c.name_zh_hans,
                accounts.c.type,
                accounts.c.currency,
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return AccountResponse(**row)


@app.get("/books/{book_id}/categories", response_model=list[CategoryResponse])
def list_categories(book_id: int) -> list[CategoryResponse]:
    with engine.begin() as conn:
        get_book(conn, book_id)
        rows = conn.execute(
            select(categories)
            .where(categories.c.book_id == book_id)
            .order_by(categories.c.id.asc())
        ).mappings().all()
    return [CategoryResponse(**row) for row in rows]


@app.post("/books/{book_id}/categories", response_model=CategoryResponse)
def create_category(book_id: int, payload: CategoryPayload) -> CategoryResponse:
    name_en = payload.name_en.strip()
    if not name_en:
        raise HTTPException(status_code=400, detail="Category name required.")
    try:
        category_type = CategoryType.validate(payload.type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        get_book(conn, book_id)
        if payload.parent_id is not None:
            parent = conn.execute(
                select(categories.c.id).where(
                    categories.c.id == payload.parent_id, categories.c.book_id == book_id
                )
            ).first()
            if not parent:
                raise HTTPException(status_code=400, detail="Parent category not found.")
        row = conn.execute(
            insert(categories)
            .values(
                book_id=book_id,
                parent_id=payload.parent_id,
                name_en=name_en,
                name_zh_hans=(payload.name_zh_hans or name_en).strip(),
                type=category_type,
                is_active=payload.is_active,
            )
            .returning(*categories.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return CategoryResponse(**row)


@app.put("/books/{book_id}/categories/{category_id}", response_model=CategoryResponse)
def update_category(book_id: int, category_id: int, payload: CategoryPayload) -> CategoryResponse:
    name_en = payload.name_en.strip()
    if not name_en:
        raise HTTPException(status_code=400, detail="Category name required.")
    try:
        category_type = CategoryType.validate(payload.type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.parent_id == category_id:
        raise HTTPException(status_code=400, detail="Category cannot be its own parent.")

    with engine.begin() as conn:
        get_book(conn, book_id)
        if payload.parent_id is not None:
            parent = conn.execute(
                select(categories.c.id).where(
                    categories.c.id == payload.parent_id, categories.c.book_id == book_id
                )
            ).first()
            if not parent:
                raise HTTPException(status_code=400, detail="Parent category not found.")
        row = conn.execute(
            update(categories)
            .where(categories.c.id == category_id, categories.c.book_id == book_id)
            .values(
                parent_id=payload.parent_id,
                name_en=name_en,
                name_zh_hans=(payload.name_zh_hans or name_en).strip(),
                type=category_type,
                is_active=payload.is_active,
            )
            .returning(*categories.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Category not found.")
    return CategoryResponse(**row)


@app.get("/books/{book_id}/transactions", response_model=list[TransactionResponse])
def list_transactions(book_id: int) -> list[TransactionResponse]:
    with engine.begin() as conn:
        get_book(conn, book_id)
        rows = conn.execute(
            select(transactions)
            .where(transactions.c.book_id == book_id)
            .order_by(
                transactions.c.date_utc.desc(),
                transactions.c.created_at.desc(),
                transactions.c.id.desc(),
            )
        ).mappings().all()
    return [transaction_response(row) for row in rows]


@app.post("/books/{book_id}/transactions", response_model=TransactionResponse)
def create_transaction(book_id: int, payload: TransactionPayload) -> TransactionResponse:
    with engine.begin() as conn:
        get_book(conn, book_id)
        draft = TransactionDraft(
            type=payload.type,
            date=payload.date_utc,
            amount=payload.amount,
            currency=payload.currency,
            account_id=payload.account_id,
            to_account_id=payload.to_account_id,
            category_id=payload.category_id,
            note=payload.note,
            is_refund=payload.is_refund,
        )
        try:
            normalized = validate_transaction(draft, load_book_references(conn, book_id))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        row = conn.execute(
            insert(transactions)
            .values(
                book_id=book_id,
                type=normalized.type,
                date_utc=normalized.date,
                amount=normalized.amount,
                currency=normalized.currency,
                account_id=normalized.account_id,
                to_account_id=normalized.to_account_id,
                category_id=normalized.category_id,
                note=normalized.note,
                is_refund=normalized.is_refund,
            )
            .returning(*transactions.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")
    logger.info("transaction_created", book_id=book_id, transaction_id=row["id"])
    return transaction_response(row)


@app.put("/books/{book_id}/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    book_id: int, transaction_id: int, payload: TransactionPayload
) -> TransactionResponse:
    with engine.begin() as conn:
        get_book(conn, book_id)
        existing = conn.execute(
            select(transactions.c.account_id).where(
                transactions.c.id == transaction_id, transactions.c.book_id == book_id
            )
        ).first()
        if not existing:
            raise HTTPException(status_code=404, detail="Transaction not found.")

        account_id = payload.account_id if payload.account_id is not None else existing.account_id
        draft = TransactionDraft(
            type=payload.type,
            date=payload.date_utc,
            amount=payload.amount,
            currency=payload.currency,
            account_id=account_id,
            to_account_id=payload.to_account_id,
            category_id=payload.category_id,
            note=payload.note,
            is_refund=payload.is_refund,
        )
        try:
            normalized = validate_transaction(draft, load_book_references(conn, book_id))
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        row = conn.execute(
            update(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.book_id == book_id)
            .values(
                type=normalized.type,
                date_utc=normalized.date,
                amount=normalized.amount,
                currency=normalized.currency,
                account_id=normalized.account_id,
                to_account_id=normalized.to_account_id,
                category_id=normalized.category_id,
                note=normalized.note,
                is_refund=normalized.is_refund,
            )
            .returning(*transactions.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(row)


@app.get("/exchange-rates", response_model=list[ExchangeRateResponse])
def list_exchange_rates(
    base_currency: str | None = Query(None),
    quote_currency: str | None = Query(None),
) -> list[ExchangeRateResponse]:
    stmt = select(exchange_rates)
    try:
        if base_currency:
            stmt = stmt.where(exchange_rates.c.base_currency == normalize_currency(base_currency))
        if quote_currency:
            stmt = stmt.where(exchange_rates.c.quote_currency == normalize_currency(quote_currency))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    stmt = stmt.order_by(exchange_rates.c.effective_date.desc(), exchange_rates.c.id.desc())
    with engine.begin() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [ExchangeRateResponse(**row) for row in rows]


@app.post("/exchange-rates", response_model=ExchangeRateResponse)
def record_exchange_rate(payload: ExchangeRatePayload) -> ExchangeRateResponse:
    try:
        payload = ExchangeRatePayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row = conn.execute(
            insert(exchange_rates)
            .values(
                base_currency=payload.base_currency,
                quote_currency=payload.quote_currency,
                rate=payload.rate,
                effective_date=payload.effective_date,
                source=payload.source,
            )
            .returning(*exchange_rates.c)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to record exchange rate.")
    logger.info(
        "exchange_rate_recorded",
        base_currency=row["base_currency"],
        quote_currency=row["quote_currency"],
        effective_date=row["effective_date"].isoformat(),
    )
    return ExchangeRateResponse(**row)


@app.get("/books/{book_id}/reports/summary/monthly", response_model=SummaryReportResponse)
def monthly_summary(book_id: int, year: int = Query(...), month: int = Query(...)) -> SummaryReportResponse:
    try:
        period = ReportPeriod.for_month(year, month)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return build_summary_response(book_id, period)


@app.get("/books/{book_id}/reports/summary/yearly", response_model=SummaryReportResponse)
def yearly_summary(book_id: int, year: int = Query(...)) -> SummaryReportResponse:
    try:
        period = ReportPeriod.for_year(year)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return build_summary_response(book_id, period)


@app.get("/books/{book_id}/reports/categories", response_model=CategoryDistributionResponse)
def category_distribution(
    book_id: int,
    year: int = Query(...),
    month: int | None = Query(None),
    type: str = Query(...),
) -> CategoryDistributionResponse:
    if month is not None and not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="Month must be between 1 and 12 when provided.")
    try:
        period = ReportPeriod.for_year_or_month(year, month)
        transaction_type = CategoryType.transaction_type(type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        book = get_book(conn, book_id)
        entries = load_ledger_entries(conn, book_id, period, (transaction_type,))
        label_rows = conn.execute(
            select(categories.c.id, categories.c.name_en, categories.c.name_zh_hans).where(
                categories.c.book_id == book_id
            )
        ).mappings().all()
    labels = {
        row["id"]: CategoryLabel(
            id=row["id"], name_en=row["name_en"], name_zh_hans=row["name_zh_hans"]
        )
        for row in label_rows
    }

    try:
        distribution = build_category_distribution(
            entries, labels, period, type, book["base_currency"], CONVERTER
        )
    except ConversionGap as exc:
        raise missing_rates_error(exc) from exc

    return CategoryDistributionResponse(
        base_currency=distribution.base_currency,
        period_start_utc=distribution.period_start,
        period_end_exclusive_utc=distribution.period_end_exclusive,
        type=distribution.type,
        items=[
            CategoryDistributionItemResponse(
                category_id=item.category_id,
                category_name_en=item.category_name_en,
                category_name_zh_hans=item.category_name_zh_hans,
                total_base_amount=item.total_base_amount,
            )
            for item in distribution.items
        ],
    )
