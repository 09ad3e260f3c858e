from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Collection, Optional

import structlog

from household_ledger.dates import to_utc

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")
AMOUNT_QUANTUM = Decimal("0.0001")
CURRENCY_PATTERN = re.compile(r"[A-Za-z]{3}")


class ValidationError(ValueError):
    """Raised when a transaction payload breaks a rule for its type."""


class TransactionType:
    EXPENSE = "expense"
    INCOME = "income"
    TRANSFER = "transfer"
    BALANCE_ADJUSTMENT = "balance_adjustment"
    LIABILITY_ADJUSTMENT = "liability_adjustment"

    values = {EXPENSE, INCOME, TRANSFER, BALANCE_ADJUSTMENT, LIABILITY_ADJUSTMENT}

    @classmethod
    def validate(cls, value: str) -> str:
        # Accepts "BalanceAdjustment", "balance_adjustment" and "balance-adjustment".
        collapsed = re.sub(r"(?<=[a-z])(?=[A-Z])", "_", value.strip())
        normalized = collapsed.replace("-", "_").lower()
        if normalized not in cls.values:
            raise ValidationError("Invalid transaction type.")
        return normalized


@dataclass(frozen=True)
class BookReferences:
    """Account and category ids that belong to a single book."""

    account_ids: Collection[int] = field(default_factory=frozenset)
    category_ids: Collection[int] = field(default_factory=frozenset)

    def has_account(self, account_id: Optional[int]) -> bool:
        return account_id is not None and account_id in self.account_ids

    def has_category(self, category_id: Optional[int]) -> bool:
        return category_id is not None and category_id in self.category_ids


@dataclass(frozen=True)
class TransactionDraft:
    type: str
    date: date | datetime
    amount: Decimal
    currency: str
    account_id: Optional[int]
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None
    note: Optional[str] = None
    is_refund: bool = False


@dataclass(frozen=True)
class NormalizedTransaction:
    type: str
    date: datetime
    amount: Decimal
    currency: str
    account_id: int
    to_account_id: Optional[int]
    category_id: Optional[int]
    note: Optional[str]
    is_refund: bool


Rule = Callable[[TransactionDraft, BookReferences], Optional[str]]


def _amount_is_non_zero(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if quantize_amount(draft.amount) == ZERO:
        return "Amount must be non-zero."
    return None


def _currency_is_three_letters(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if not draft.currency or not CURRENCY_PATTERN.fullmatch(draft.currency):
        return "Currency code must be 3 letters."
    return None


def _account_exists(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if not refs.has_account(draft.account_id):
        return "Account not found."
    return None


def _transfer_has_destination(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.to_account_id is None:
        return "Transfer requires a destination account."
    return None


def _transfer_accounts_differ(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.to_account_id == draft.account_id:
        return "Transfer accounts must be different."
    return None


def _destination_exists(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if not refs.has_account(draft.to_account_id):
        return "Destination account not found."
    return None


def _transfer_has_no_category(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.category_id is not None:
        return "Transfer cannot have a category."
    return None


def _transfer_is_not_refund(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.is_refund:
        return "Transfer cannot be a refund."
    return None


def _category_present(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.category_id is None:
        return "Income and expense require a category."
    return None


def _category_exists(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if not refs.has_category(draft.category_id):
        return "Category not found."
    return None


def _no_destination_for_categorized(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.to_account_id is not None:
        return "Income and expense cannot have a destination account."
    return None


def _income_is_not_refund(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.is_refund:
        return "Income cannot be marked as refund."
    return None


def _adjustment_is_bare(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.category_id is not None or draft.to_account_id is not None:
        return "Balance adjustment cannot have category or destination account."
    return None


def _adjustment_is_not_refund(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    if draft.is_refund:
        return "Balance adjustment cannot be a refund."
    return None


BASE_RULES: tuple[Rule, ...] = (
    _amount_is_non_zero,
    _currency_is_three_letters,
    _account_exists,
)

CATEGORIZED_RULES: tuple[Rule, ...] = (
    _category_present,
    _category_exists,
    _no_destination_for_categorized,
)

TYPE_RULES: dict[str, tuple[Rule, ...]] = {
    TransactionType.TRANSFER: (
        _transfer_has_destination,
        _transfer_accounts_differ,
        _destination_exists,
        _transfer_has_no_category,
        _transfer_is_not_refund,
    ),
    TransactionType.INCOME: CATEGORIZED_RULES + (_income_is_not_refund,),
    TransactionType.EXPENSE: CATEGORIZED_RULES,
    TransactionType.BALANCE_ADJUSTMENT: (
        _adjustment_is_bare,
        _adjustment_is_not_refund,
    ),
    TransactionType.LIABILITY_ADJUSTMENT: (),
}


def rules_for(transaction_type: str) -> tuple[Rule, ...]:
    return BASE_RULES + TYPE_RULES[transaction_type]


def find_violation(draft: TransactionDraft, refs: BookReferences) -> Optional[str]:
    """Return the message of the first rule the draft breaks, or None."""
    for rule in rules_for(draft.type):
        message = rule(draft, refs)
        if message is not None:
            return message
    return None


def quantize_amount(amount: Decimal | int | float | str) -> Decimal:
    coerced = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return coerced.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


def normalize_amount(transaction_type: str, amount: Decimal, is_refund: bool) -> Decimal:
    """Store magnitudes only; an expense refund is the single negative case."""
    normalized = abs(quantize_amount(amount))
    if transaction_type == TransactionType.EXPENSE and is_refund:
        return -normalized
    return normalized


def validate_transaction(draft: TransactionDraft, refs: BookReferences) -> NormalizedTransaction:
    draft = replace(draft, type=TransactionType.validate(draft.type))
    message = find_violation(draft, refs)
    if message is not None:
        logger.info(
            "transaction_rejected",
            transaction_type=draft.type,
            account_id=draft.account_id,
            reason=message,
        )
        raise ValidationError(message)

    return NormalizedTransaction(
        type=draft.type,
        date=to_utc(draft.date),
        amount=normalize_amount(draft.type, draft.amount, draft.is_refund),
        currency=draft.currency.upper(),
        account_id=draft.account_id,
        to_account_id=draft.to_account_id,
        category_id=draft.category_id,
        note=draft.note.strip() if draft.note else None,
        is_refund=draft.is_refund,
    )
