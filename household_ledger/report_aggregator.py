from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Hashable, Iterable, List, Mapping, Optional

import structlog

from household_ledger.currency_conversion import CurrencyConverter, normalize_currency
from household_ledger.dates import ReportPeriod
from household_ledger.transaction_rules import TransactionType

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


class CategoryType:
    INCOME = "income"
    EXPENSE = "expense"

    values = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid category type.")
        return normalized

    @classmethod
    def transaction_type(cls, value: str) -> str:
        if cls.validate(value) == cls.INCOME:
            return TransactionType.INCOME
        return TransactionType.EXPENSE


@dataclass(frozen=True)
class LedgerEntry:
    id: Hashable
    type: str
    date: date | datetime
    amount: Decimal
    currency: str
    category_id: Optional[Hashable] = None


@dataclass(frozen=True)
class CategoryLabel:
    id: Hashable
    name_en: str
    name_zh_hans: str = ""


@dataclass(frozen=True)
class PeriodSummary:
    base_currency: str
    period_start: datetime
    period_end_exclusive: datetime
    income_total: Decimal
    expense_total: Decimal
    net_total: Decimal


@dataclass(frozen=True)
class CategoryTotal:
    category_id: Hashable
    category_name_en: str
    category_name_zh_hans: str
    total_base_amount: Decimal


@dataclass(frozen=True)
class CategoryDistribution:
    base_currency: str
    period_start: datetime
    period_end_exclusive: datetime
    type: str
    items: List[CategoryTotal]


def build_period_summary(
    entries: Iterable[LedgerEntry],
    period: ReportPeriod,
    base_currency: str,
    converter: CurrencyConverter,
) -> PeriodSummary:
    """Income, expense and net totals for ``period`` in ``base_currency``.

    Raises ConversionGap when any income or expense in the period lacks a rate.
    """
    target = normalize_currency(base_currency)
    selected = [
        entry
        for entry in entries
        if entry.type in (TransactionType.INCOME, TransactionType.EXPENSE)
        and period.contains(entry.date)
    ]
    conversion = converter.convert(selected, target, period.end_exclusive)
    conversion.raise_for_missing()

    converted = conversion.amounts_by_id()
    income_total = _sum_type(selected, converted, TransactionType.INCOME)
    expense_total = _sum_type(selected, converted, TransactionType.EXPENSE)
    logger.info(
        "period_summary_built",
        base_currency=target,
        period_start=period.start.isoformat(),
        transactions=len(selected),
    )
    return PeriodSummary(
        base_currency=target,
        period_start=period.start,
        period_end_exclusive=period.end_exclusive,
        income_total=income_total,
        expense_total=expense_total,
        net_total=income_total - expense_total,
    )


def monthly_summary(
    entries: Iterable[LedgerEntry],
    year: int,
    month: int,
    base_currency: str,
    converter: CurrencyConverter,
) -> PeriodSummary:
    return build_period_summary(
        entries, ReportPeriod.for_month(year, month), base_currency, converter
    )


def yearly_summary(
    entries: Iterable[LedgerEntry],
    year: int,
    base_currency: str,
    converter: CurrencyConverter,
) -> PeriodSummary:
    return build_period_summary(entries, ReportPeriod.for_year(year), base_currency, converter)


def build_category_distribution(
    entries: Iterable[LedgerEntry],
    categories: Mapping[Hashable, CategoryLabel],
    period: ReportPeriod,
    category_type: str,
    base_currency: str,
    converter: CurrencyConverter,
) -> CategoryDistribution:
    """Per-category totals ranked by absolute converted amount, largest first."""
    target = normalize_currency(base_currency)
    normalized_type = CategoryType.validate(category_type)
    transaction_type = CategoryType.transaction_type(normalized_type)
    selected = [
        entry
        for entry in entries
        if entry.type == transaction_type
        and entry.category_id is not None
        and entry.category_id in categories
        and period.contains(entry.date)
    ]
    conversion = converter.convert(selected, target, period.end_exclusive)
    conversion.raise_for_missing()

    converted = conversion.amounts_by_id()
    totals: dict[Hashable, Decimal] = {}
    for entry in selected:
        totals[entry.category_id] = totals.get(entry.category_id, ZERO) + converted[entry.id]

    items = [
        CategoryTotal(
            category_id=category_id,
            category_name_en=categories[category_id].name_en,
            category_name_zh_hans=categories[category_id].name_zh_hans,
            total_base_amount=total,
        )
        for category_id, total in totals.items()
    ]
    items.sort(key=lambda item: abs(item.total_base_amount), reverse=True)
    return CategoryDistribution(
        base_currency=target,
        period_start=period.start,
        period_end_exclusive=period.end_exclusive,
        type=normalized_type,
        items=items,
    )


def _sum_type(
    entries: Iterable[LedgerEntry], converted: Mapping[Hashable, Decimal], txn_type: str
) -> Decimal:
    total = ZERO
    for entry in entries:
        if entry.type != txn_type:
            continue
        total += converted[entry.id]
    return total
