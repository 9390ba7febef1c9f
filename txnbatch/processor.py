from collections import defaultdict
from collections.abc import Iterable, Sequence
from decimal import MAX_EMAX, MIN_EMIN, ROUND_HALF_UP, Context, Decimal
from typing import Protocol

from txnbatch.errors import PersistenceError
from txnbatch.schemas import AccountSummary, ProcessedResult, TransactionEntity, TransactionRecord


CENT = Decimal("0.01")
DEFAULT_CATEGORY = "uncategorized"


class Persister(Protocol):
    def bulk_insert(self, results: Sequence[ProcessedResult]) -> int:
        """Write every result in one operation; return how many rows were stored."""
        ...


def _exact_context(amount: Decimal) -> Context:
    # Wide enough that quantizing or scaling a finite amount never rounds or traps.
    return Context(prec=max(28, amount.adjusted() + 6), Emax=MAX_EMAX, Emin=MIN_EMIN)


def to_cents(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP, context=_exact_context(amount))


def to_minor_units(amount: Decimal) -> int:
    return int(to_cents(amount).scaleb(2, context=_exact_context(amount)))


def to_entity(record: TransactionRecord) -> TransactionEntity:
    return TransactionEntity(
        transaction_id=record.transaction_id.strip(),
        account_id=record.account_id.strip(),
        booked_at=record.timestamp,
        amount=to_cents(record.amount),
        currency=record.currency.strip().upper(),
        category=record.category.strip().lower() or DEFAULT_CATEGORY,
        merchant=record.merchant.strip(),
        description=" ".join(record.description.split()),
    )


def summarize(results: Iterable[ProcessedResult]) -> list[AccountSummary]:
    """Aggregate processed results per account and currency.

    The output depends only on the input set: groups are sorted by key, and the
    reported description is the one from the latest timestamp, ties going to
    the highest transaction id.
    """
    groups: dict[tuple[str, str], list[TransactionEntity]] = defaultdict(list)
    for result in results:
        entity = result.entity
        groups[(entity.account_id, entity.currency)].append(entity)

    summaries: list[AccountSummary] = []
    for (account_id, currency), entities in sorted(groups.items()):
        credits = sum((e.amount for e in entities if e.amount >= 0), Decimal("0"))
        debits = sum((e.amount for e in entities if e.amount < 0), Decimal("0"))
        latest = max(entities, key=lambda e: (e.booked_at, e.transaction_id))

        category_totals: dict[str, Decimal] = defaultdict(Decimal)
        for entity in entities:
            category_totals[entity.category] += entity.amount

        summaries.append(
            AccountSummary(
                account_id=account_id,
                currency=currency,
                transaction_count=len(entities),
                total_amount=credits + debits,
                total_credits=credits,
                total_debits=debits,
                largest_amount=max(abs(e.amount) for e in entities),
                first_seen=min(e.booked_at for e in entities),
                last_seen=latest.booked_at,
                last_description=latest.description,
                category_totals=tuple(sorted(category_totals.items())),
            )
        )
    return summaries


class TransactionProcessor:
    def __init__(self, persister: Persister) -> None:
        self.persister = persister

    def process(self, records: Iterable[TransactionRecord]) -> list[ProcessedResult]:
        results: list[ProcessedResult] = []
        for record in records:
            entity = to_entity(record)
            results.append(
                ProcessedResult(
                    entity=entity,
                    amount_minor=to_minor_units(entity.amount),
                    direction="credit" if entity.amount >= 0 else "debit",
                    booking_date=entity.booked_at.date(),
                )
            )
        results.sort(key=lambda result: result.entity.transaction_id)
        return results

    def persist(self, results: Sequence[ProcessedResult]) -> int:
        if not results:
            return 0
        try:
            return self.persister.bulk_insert(results)
        except PersistenceError:
            raise
        except Exception as exc:
            raise PersistenceError(f"bulk insert of {len(results)} transactions failed: {exc}") from exc
