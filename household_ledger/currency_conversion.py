from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Hashable, Iterable, Optional, Protocol, Sequence

import structlog

from household_ledger.dates import to_utc

logger = structlog.get_logger(__name__)

MISSING_RATES_MESSAGE = "Missing exchange rate data for one or more transactions."


@dataclass(frozen=True)
class ExchangeRate:
    """One unit of ``base_currency`` is worth ``rate`` units of ``quote_currency``."""

    base_currency: str
    quote_currency: str
    rate: Decimal
    effective_date: datetime
    source: str = ""


class Convertible(Protocol):
    id: Hashable
    date: date | datetime
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class ConvertedTransaction:
    transaction_id: Hashable
    base_amount: Decimal


class ConversionGap(ValueError):
    """Raised when at least one transaction has no usable exchange rate."""

    def __init__(self, missing_rates: Sequence[str]) -> None:
        super().__init__(MISSING_RATES_MESSAGE)
        self.missing_rates = list(missing_rates)


@dataclass(frozen=True)
class ConversionResult:
    converted: tuple[ConvertedTransaction, ...] = ()
    missing_rates: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.missing_rates

    def amounts_by_id(self) -> dict[Hashable, Decimal]:
        return {item.transaction_id: item.base_amount for item in self.converted}

    def raise_for_missing(self) -> None:
        if self.missing_rates:
            raise ConversionGap(self.missing_rates)


class RateSource(Protocol):
    def load_rates(
        self, base_currency: str, currencies: Sequence[str], before: datetime
    ) -> Iterable[ExchangeRate]:
        ...


@dataclass(frozen=True)
class StaticRateSource:
    """In-memory rates, filtered the same way the database query filters them."""

    rates: Sequence[ExchangeRate] = ()

    def load_rates(
        self, base_currency: str, currencies: Sequence[str], before: datetime
    ) -> list[ExchangeRate]:
        wanted = {normalize_currency(code) for code in currencies}
        target = normalize_currency(base_currency)
        cutoff = to_utc(before)
        loaded: list[ExchangeRate] = []
        for rate in self.rates:
            if to_utc(rate.effective_date) >= cutoff:
                continue
            rate_base = normalize_currency(rate.base_currency)
            rate_quote = normalize_currency(rate.quote_currency)
            if (rate_base in wanted and rate_quote == target) or (
                rate_base == target and rate_quote in wanted
            ):
                loaded.append(rate)
        return loaded


@dataclass
class RatePool:
    """Rates bucketed by currency pair, each bucket sorted by effective timestamp."""

    _buckets: dict[tuple[str, str], list[ExchangeRate]] = field(default_factory=dict)
    _days: dict[tuple[str, str], list[date]] = field(default_factory=dict)

    @classmethod
    def from_rates(cls, rates: Iterable[ExchangeRate]) -> "RatePool":
        buckets: dict[tuple[str, str], list[ExchangeRate]] = {}
        for rate in rates:
            normalized = ExchangeRate(
                base_currency=normalize_currency(rate.base_currency),
                quote_currency=normalize_currency(rate.quote_currency),
                rate=_coerce_amount(rate.rate),
                effective_date=to_utc(rate.effective_date),
                source=rate.source,
            )
            pair = (normalized.base_currency, normalized.quote_currency)
            buckets.setdefault(pair, []).append(normalized)

        days: dict[tuple[str, str], list[date]] = {}
        for pair, bucket in buckets.items():
            # sort is stable, so equal timestamps keep load order
            bucket.sort(key=lambda item: item.effective_date)
            days[pair] = [item.effective_date.date() for item in bucket]
        return cls(_buckets=buckets, _days=days)

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())

    def latest(
        self,
        base_currency: str,
        quote_currency: str,
        on_or_before: date,
        *,
        nonzero: bool = False,
    ) -> Optional[ExchangeRate]:
        """Most recent rate for the pair whose effective day is not after ``on_or_before``.

        Among rates sharing the winning timestamp the first one loaded is returned.
        """
        pair = (base_currency, quote_currency)
        bucket = self._buckets.get(pair)
        if not bucket:
            return None
        position = bisect_right(self._days[pair], on_or_before)
        chosen: Optional[ExchangeRate] = None
        for index in range(position - 1, -1, -1):
            candidate = bucket[index]
            if nonzero and candidate.rate == 0:
                continue
            if chosen is not None and candidate.effective_date < chosen.effective_date:
                break
            chosen = candidate
        return chosen


@dataclass(frozen=True)
class CurrencyConverter:
    rate_source: RateSource = field(default_factory=StaticRateSource)

    def convert(
        self,
        transactions: Sequence[Convertible],
        base_currency: str,
        cutoff: date | datetime,
    ) -> ConversionResult:
        """Convert every transaction into ``base_currency``.

        Rates effective at or after ``cutoff`` are never considered. Each
        transaction uses the latest direct rate effective on or before its
        calendar day, falling back to the reciprocal of the latest inverse
        rate. Transactions with neither are reported in ``missing_rates`` and
        left out of ``converted``.
        """
        target = normalize_currency(base_currency)
        used_currencies = sorted(
            {
                normalize_currency(txn.currency)
                for txn in transactions
                if normalize_currency(txn.currency) != target
            }
        )

        pool = RatePool()
        if used_currencies:
            pool = RatePool.from_rates(
                self.rate_source.load_rates(target, used_currencies, to_utc(cutoff))
            )
            logger.debug(
                "rate_pool_loaded",
                base_currency=target,
                currencies=used_currencies,
                rates=len(pool),
            )

        converted: list[ConvertedTransaction] = []
        missing_rates: list[str] = []
        for txn in transactions:
            amount = _coerce_amount(txn.amount)
            currency = normalize_currency(txn.currency)
            if currency == target:
                converted.append(ConvertedTransaction(txn.id, amount))
                continue

            day = to_utc(txn.date).date()
            direct = pool.latest(currency, target, day)
            if direct is not None:
                converted.append(ConvertedTransaction(txn.id, amount * direct.rate))
                continue

            inverse = pool.latest(target, currency, day, nonzero=True)
            if inverse is not None:
                converted.append(ConvertedTransaction(txn.id, amount / inverse.rate))
                continue

            missing_rates.append(f"{currency}->{target} on or before {day.isoformat()}")

        if missing_rates:
            logger.warning(
                "missing_exchange_rates",
                base_currency=target,
                missing=len(missing_rates),
            )
        return ConversionResult(converted=tuple(converted), missing_rates=tuple(missing_rates))


def convert_to_base_currency(
    transactions: Sequence[Convertible],
    base_currency: str,
    cutoff: date | datetime,
    rates: Iterable[ExchangeRate] = (),
) -> ConversionResult:
    converter = CurrencyConverter(rate_source=StaticRateSource(rates=tuple(rates)))
    return converter.convert(transactions, base_currency, cutoff)


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not (normalized.isascii() and normalized.isalpha()):
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
