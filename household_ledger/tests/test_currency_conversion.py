import unittest
from datetime import date, datetime
from decimal import Decimal

from household_ledger.currency_conversion import (
    ConversionGap,
    CurrencyConverter,
    ExchangeRate,
    RatePool,
    StaticRateSource,
    convert_to_base_currency,
    normalize_currency,
)
from household_ledger.report_aggregator import LedgerEntry


def rate(base: str, quote: str, value: str, effective: date, source: str = "test") -> ExchangeRate:
    return ExchangeRate(
        base_currency=base,
        quote_currency=quote,
        rate=Decimal(value),
        effective_date=datetime(effective.year, effective.month, effective.day),
        source=source,
    )


def entry(txn_id: int, amount: str, currency: str, day: date) -> LedgerEntry:
    return LedgerEntry(
        id=txn_id,
        type="expense",
        date=datetime(day.year, day.month, day.day, 15, 0),
        amount=Decimal(amount),
        currency=currency,
    )


class RecordingSource:
    def __init__(self, rates=()) -> None:
        self.rates = list(rates)
        self.calls = []

    def load_rates(self, base_currency, currencies, before):
        self.calls.append((base_currency, list(currencies), before))
        return StaticRateSource(rates=self.rates).load_rates(base_currency, currencies, before)


class CurrencyConversionTests(unittest.TestCase):
    cutoff = datetime(2026, 2, 1)

    def test_base_currency_is_identity_regardless_of_rates(self) -> None:
        rates = [rate("USD", "USD", "3", date(2026, 1, 1)), rate("EUR", "USD", "2", date(2026, 1, 1))]

        result = convert_to_base_currency(
            [entry(1, "12.50", "usd", date(2026, 1, 5))], "USD", self.cutoff, rates
        )

        self.assertEqual(result.amounts_by_id(), {1: Decimal("12.50")})
        self.assertTrue(result.complete)

    def test_skips_rate_loading_when_everything_is_in_base(self) -> None:
        source = RecordingSource()

        CurrencyConverter(rate_source=source).convert(
            [entry(1, "5", "USD", date(2026, 1, 5))], "usd", self.cutoff
        )

        self.assertEqual(source.calls, [])

    def test_loads_pool_once_for_all_used_currencies(self) -> None:
        source = RecordingSource([rate("EUR", "USD", "1.2", date(2026, 1, 1))])
        transactions = [
            entry(1, "10", "eur", date(2026, 1, 5)),
            entry(2, "10", "EUR", date(2026, 1, 6)),
            entry(3, "1000", "JPY", date(2026, 1, 7)),
        ]

        CurrencyConverter(rate_source=source).convert(transactions, "USD", self.cutoff)

        self.assertEqual(source.calls, [("USD", ["EUR", "JPY"], self.cutoff)])

    def test_direct_rate_multiplies(self) -> None:
        result = convert_to_base_currency(
            [entry(1, "100", "EUR", date(2026, 1, 12))],
            "USD",
            self.cutoff,
            [rate("EUR", "USD", "1.2", date(2026, 1, 10))],
        )

        self.assertEqual(result.amounts_by_id()[1], Decimal("120"))

    def test_inverse_rate_fallback_divides(self) -> None:
        result = convert_to_base_currency(
            [entry(1, "1000", "JPY", date(2026, 1, 7))],
            "USD",
            self.cutoff,
            [rate("USD", "JPY", "100", date(2026, 1, 5))],
        )

        self.assertEqual(result.amounts_by_id()[1], Decimal("10"))

    def test_direct_and_inverse_agree_within_rounding(self) -> None:
        transactions = [entry(1, "250", "EUR", date(2026, 1, 20))]
        direct = convert_to_base_currency(
            transactions, "USD", self.cutoff, [rate("EUR", "USD", "1.25", date(2026, 1, 1))]
        )
        inverse = convert_to_base_currency(
            transactions, "USD", self.cutoff, [rate("USD", "EUR", "0.8", date(2026, 1, 1))]
        )

        self.assertAlmostEqual(
            direct.amounts_by_id()[1], inverse.amounts_by_id()[1], delta=Decimal("0.0001")
        )

    def test_direct_rate_wins_over_inverse(self) -> None:
        result = convert_to_base_currency(
            [entry(1, "10", "EUR", date(2026, 1, 20))],
            "USD",
            self.cutoff,
            [
                rate("USD", "EUR", "0.5", date(2026, 1, 15)),
                rate("EUR", "USD", "1.1", date(2026, 1, 1)),
            ],
        )

        self.assertEqual(result.amounts_by_id()[1], Decimal("11.0"))

    def test_picks_latest_rate_not_after_transaction_day(self) -> None:
        rates = [
            rate("EUR", "USD", "1.1", date(2026, 1, 1)),
            rate("EUR", "USD", "1.3", date(2026, 1, 20)),
            rate("EUR", "USD", "1.2", date(2026, 1, 10)),
        ]
        transactions = [
            entry(1, "10", "EUR", date(2026, 1, 25)),
            entry(2, "10", "EUR", date(2026, 1, 10)),
            entry(3, "10", "EUR", date(2026, 1, 9)),
        ]

        amounts = convert_to_base_currency(transactions, "USD", self.cutoff, rates).amounts_by_id()

        self.assertEqual(amounts, {1: Decimal("13.0"), 2: Decimal("12.0"), 3: Decimal("11.0")})

    def test_future_rate_is_never_applied_backwards(self) -> None:
        result = convert_to_base_currency(
            [entry(1, "10", "EUR", date(2026, 1, 9))],
            "USD",
            self.cutoff,
            [rate("EUR", "USD", "1.2", date(2026, 1, 10))],
        )

        self.assertEqual(result.converted, ())
        self.assertEqual(result.missing_rates, ("EUR->USD on or before 2026-01-09",))

    def test_rates_at_or_after_cutoff_are_ignored(self) -> None:
        result = convert_to_base_currency(
            [entry(1, "10", "EUR", date(2026, 2, 3))],
            "USD",
            self.cutoff,
            [rate("EUR", "USD", "1.2", date(2026, 2, 1))],
        )

        self.assertFalse(result.complete)

    def test_zero_inverse_rate_is_skipped(self) -> None:
        result = convert_to_base_currency(
            [entry(1, "50", "JPY", date(2026, 1, 20))],
            "USD",
            self.cutoff,
            [
                rate("USD", "JPY", "100", date(2026, 1, 1)),
                rate("USD", "JPY", "0", date(2026, 1, 15)),
            ],
        )

        self.assertEqual(result.amounts_by_id()[1], Decimal("0.5"))

    def test_missing_rate_is_reported_and_excluded(self) -> None:
        transactions = [
            entry(1, "200", "gbp", date(2026, 1, 20)),
            entry(2, "30", "USD", date(2026, 1, 15)),
        ]

        result = convert_to_base_currency(transactions, "USD", self.cutoff, [])

        self.assertEqual(result.amounts_by_id(), {2: Decimal("30")})
        self.assertEqual(result.missing_rates, ("GBP->USD on or before 2026-01-20",))
        with self.assertRaises(ConversionGap) as ctx:
            result.raise_for_missing()
        self.assertEqual(ctx.exception.missing_rates, ["GBP->USD on or before 2026-01-20"])

    def test_result_does_not_depend_on_batch_order(self) -> None:
        rates = [
            rate("EUR", "USD", "1.1", date(2026, 1, 1)),
            rate("EUR", "USD", "1.2", date(2026, 1, 10)),
        ]
        transactions = [
            entry(1, "10", "EUR", date(2026, 1, 12)),
            entry(2, "10", "EUR", date(2026, 1, 3)),
        ]

        forward = convert_to_base_currency(transactions, "USD", self.cutoff, rates)
        backward = convert_to_base_currency(list(reversed(transactions)), "USD", self.cutoff, rates)

        self.assertEqual(forward.amounts_by_id(), backward.amounts_by_id())

    def test_same_day_tie_keeps_first_loaded_rate(self) -> None:
        pool = RatePool.from_rates(
            [
                rate("EUR", "USD", "1.15", date(2026, 1, 10), source="first"),
                rate("EUR", "USD", "1.25", date(2026, 1, 10), source="second"),
            ]
        )

        chosen = pool.latest("EUR", "USD", date(2026, 1, 10))

        self.assertEqual(chosen.source, "first")

    def test_normalizes_currency_codes(self) -> None:
        self.assertEqual(normalize_currency(" eur "), "EUR")
        with self.assertRaises(ValueError):
            normalize_currency("EURO")

    def test_rejects_non_ascii_currency_letters(self) -> None:
        for value in ("ÄBC", "ЕUR", "éur"):
            with self.subTest(value=value):
                with self.assertRaises(ValueError):
                    normalize_currency(value)

    def test_latest_skips_zero_rates_and_respects_bound(self) -> None:
        pool = RatePool.from_rates(
            [
                rate("USD", "JPY", "100", date(2026, 1, 1), source="old"),
                rate("USD", "JPY", "0", date(2026, 1, 15), source="zero"),
                rate("USD", "JPY", "120", date(2026, 1, 25), source="future"),
            ]
        )

        self.assertEqual(pool.latest("USD", "JPY", date(2026, 1, 20)).source, "zero")
        self.assertEqual(pool.latest("USD", "JPY", date(2026, 1, 20), nonzero=True).source, "old")
        self.assertIsNone(pool.latest("USD", "JPY", date(2025, 12, 31)))


if __name__ == "__main__":
    unittest.main()
