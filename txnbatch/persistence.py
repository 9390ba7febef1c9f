from collections.abc import Sequence
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from txnbatch.db_models import TransactionRow, as_naive_utc
from txnbatch.errors import PersistenceError
from txnbatch.schemas import ProcessedResult


logger = logging.getLogger(__name__)


class SqlTransactionPersister:
    """Stores processed transactions in one database transaction per call.

    Rows whose ``transaction_id`` is already stored are skipped, so re-running a
    file inserts nothing new. Any database error rolls the whole call back.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def bulk_insert(self, results: Sequence[ProcessedResult]) -> int:
        ids = [result.entity.transaction_id for result in results]
        with self.session_factory() as db:
            try:
                existing_stmt = select(TransactionRow.transaction_id).where(TransactionRow.transaction_id.in_(ids))
                existing_ids = set(db.execute(existing_stmt).scalars().all())

                rows = [self._to_row(result) for result in results if result.entity.transaction_id not in existing_ids]
                db.add_all(rows)
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise PersistenceError(f"bulk insert of {len(results)} transactions rejected: {exc}") from exc

        if existing_ids:
            logger.info(
                "skipped transactions already stored",
                extra={"skipped": len(existing_ids), "inserted": len(rows)},
            )
        return len(rows)

    def _to_row(self, result: ProcessedResult) -> TransactionRow:
        entity = result.entity
        return TransactionRow(
            transaction_id=entity.transaction_id,
            account_id=entity.account_id,
            booked_at=as_naive_utc(entity.booked_at),
            booking_date=result.booking_date,
            amount=entity.amount,
            amount_minor=result.amount_minor,
            direction=result.direction,
            currency=entity.currency,
            category=entity.category,
            merchant=entity.merchant,
            description=entity.description,
        )
