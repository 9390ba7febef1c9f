from collections.abc import Iterable
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from txnbatch.schemas import Batch, TransactionRecord, ValidationOutcome


class RuleSet(Protocol):
    def check(self, record: TransactionRecord) -> list[str]:
        """Return every rule violation for ``record``, in a stable order."""
        ...


def decimal_places(amount: Decimal) -> int:
    """Significant decimal places, ignoring trailing zeros (1.500 has one)."""
    _, digits, exponent = amount.as_tuple()
    places = max(0, -int(exponent))
    significant = list(digits)
    while places and significant and significant[-1] == 0:
        significant.pop()
        places -= 1
    return places if significant else 0


class TransactionRules:
    def __init__(
        self,
        *,
        allow_negative_amounts: bool = False,
        max_decimal_places: int = 2,
        max_integer_digits: int = 16,
        max_description_length: int = 255,
        max_category_length: int = 100,
        not_after: datetime | None = None,
    ) -> None:
        self.allow_negative_amounts = allow_negative_amounts
        self.max_decimal_places = max_decimal_places
        self.max_integer_digits = max_integer_digits
        self.max_description_length = max_description_length
        self.max_category_length = max_category_length
        self.not_after = not_after

    def check(self, record: TransactionRecord) -> list[str]:
        reasons: list[str] = []

        if not record.account_id.strip():
            reasons.append("account_id is required")

        currency = record.currency.strip()
        if len(currency) != 3 or not currency.isalpha():
            reasons.append(f"currency must be a three-letter code, got {record.currency!r}")

        if not self.allow_negative_amounts and record.amount < 0:
            reasons.append(f"amount must be non-negative, got {record.amount}")

        if decimal_places(record.amount) > self.max_decimal_places:
            reasons.append(f"amount must have at most {self.max_decimal_places} decimal places")

        if record.amount and record.amount.adjusted() + 1 > self.max_integer_digits:
            reasons.append(f"amount must have at most {self.max_integer_digits} integer digits")

        description = record.description.strip()
        if not description:
            reasons.append("description is required")
        elif len(description) > self.max_description_length:
            reasons.append(f"description must be at most {self.max_description_length} characters")

        if len(record.category.strip()) > self.max_category_length:
            reasons.append(f"category must be at most {self.max_category_length} characters")

        if self.not_after is not None and record.timestamp > self.not_after:
            reasons.append(f"timestamp {record.timestamp.isoformat()} is later than {self.not_after.isoformat()}")

        return reasons


class RecordValidator:
    """Runs a rule set over a batch and classifies each record.

    No business judgment lives here; the injected rules decide what is wrong. All
    reasons are collected for each record so operators see every problem at once.
    """

    def __init__(self, rules: RuleSet) -> None:
        self.rules = rules

    def validate(self, batch: Batch) -> list[ValidationOutcome]:
        outcomes: list[ValidationOutcome] = []
        for record in batch.records:
            reasons = self.rules.check(record)
            if reasons:
                outcomes.append(ValidationOutcome.invalid(record, reasons))
            else:
                outcomes.append(ValidationOutcome.valid(record))
        return outcomes


def partition(outcomes: Iterable[ValidationOutcome]) -> tuple[list[TransactionRecord], list[ValidationOutcome]]:
    valid: list[TransactionRecord] = []
    invalid: list[ValidationOutcome] = []
    for outcome in outcomes:
        if outcome.is_valid:
            valid.append(outcome.record)
        else:
            invalid.append(outcome)
    return valid, invalid

