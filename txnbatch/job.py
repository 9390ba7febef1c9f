import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
import logging
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy.orm import Session, sessionmaker

from txnbatch.config import Settings
from txnbatch.errors import JobCancelledError, LoadError, PersistenceError
from txnbatch.loader import CsvTransactionLoader
from txnbatch.outputs import write_json
from txnbatch.persistence import SqlTransactionPersister
from txnbatch.processor import TransactionProcessor, summarize
from txnbatch.quarantine import FileQuarantineWriter, QuarantineSink
from txnbatch.retry import RetryPolicy
from txnbatch.schemas import (
    AccountSummary,
    Batch,
    JobRunReport,
    JobState,
    QuarantineEntry,
    RunReportBuilder,
    ValidationOutcome,
)
from txnbatch.validation import RecordValidator, TransactionRules, partition


logger = logging.getLogger(__name__)


class BatchLoader(Protocol):
    def load(self, path: str | Path) -> Batch:
        ...


def utc_now() -> datetime:
    return datetime.now(UTC)


def build_retry_policy(settings: Settings, *, job_logger: logging.Logger | None = None) -> RetryPolicy:
    # Only load failures are retried; anything else from the loader is a bug.
    return RetryPolicy(
        max_attempts=settings.max_load_attempts,
        delay_seconds=settings.retry_delay_seconds,
        backoff_multiplier=settings.retry_backoff_multiplier,
        max_delay_seconds=settings.retry_max_delay_seconds,
        logger=job_logger or logger,
        should_retry=lambda exc: isinstance(exc, LoadError),
    )


class TransactionJob:
    """One scheduled load, validate, persist and quarantine run.

    State moves idle -> loading -> validating -> processing -> quarantining ->
    completed, and any stage may end in failed. Cancellation is checked before
    loading, validating and processing; once rows are persisted the run always
    finishes its quarantine step. The job object holds collaborators only, every
    per-run value lives in ``execute_async``.
    """

    def __init__(
        self,
        *,
        loader: BatchLoader,
        validator: RecordValidator,
        processor: TransactionProcessor,
        retry_policy: RetryPolicy,
        job_name: str = "process-transactions",
        quarantine: QuarantineSink | None = None,
        job_logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.loader = loader
        self.validator = validator
        self.processor = processor
        self.retry_policy = retry_policy
        self.job_name = job_name
        self.quarantine = quarantine
        self.logger = job_logger or logger
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        retry_policy: RetryPolicy | None = None,
    ) -> "TransactionJob":
        return cls(
            loader=CsvTransactionLoader(),
            validator=RecordValidator(TransactionRules(allow_negative_amounts=settings.allow_negative_amounts)),
            processor=TransactionProcessor(SqlTransactionPersister(session_factory)),
            retry_policy=retry_policy or build_retry_policy(settings),
            job_name=settings.job_name,
        )

    async def execute_async(
        self,
        input_path: str | Path,
        output_path: str | Path,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> JobRunReport:
        started_at = self.clock()
        run_key = f"{self.job_name}-{started_at:%Y%m%dT%H%M%S%fZ}-{uuid4().hex[:6]}"
        report = RunReportBuilder(
            run_key=run_key,
            job_name=self.job_name,
            input_path=str(input_path),
            output_path=str(output_path),
            started_at=started_at,
        )
        summaries: list[AccountSummary] = []
        self.logger.info("job run started", extra={"run_key": run_key, "input_path": str(input_path)})

        try:
            self._checkpoint(cancel_event)
            report.state = JobState.LOADING
            batch = await self._load(input_path, report)
            report.loaded = len(batch.records)
            report.rejected_lines = len(batch.rejected)

            self._checkpoint(cancel_event)
            report.state = JobState.VALIDATING
            outcomes = self.validator.validate(batch)
            valid_records, invalid_outcomes = partition(outcomes)
            report.valid = len(valid_records)
            report.invalid = len(invalid_outcomes)

            self._checkpoint(cancel_event)
            report.state = JobState.PROCESSING
            results = self.processor.process(valid_records)
            summaries = summarize(results)
            persist_error: PersistenceError | None = None
            try:
                report.persisted = self.processor.persist(results)
            except PersistenceError as exc:
                # Invalid rows are still quarantined below before the run fails.
                persist_error = exc

            report.state = JobState.QUARANTINING
            self._quarantine(batch, invalid_outcomes, output_path, report)

            if persist_error is not None:
                report.state = JobState.PROCESSING
                raise persist_error
            report.state = JobState.COMPLETED
        except Exception as exc:
            report.fail(exc)
            self.logger.exception(
                "job run failed",
                extra={"run_key": run_key, "failed_in": str(report.failed_in), "error_type": report.error_type},
            )

        finished_at = self.clock()
        self._write_report(report, summaries, output_path, finished_at)
        final = report.build(finished_at)

        if final.succeeded:
            self.logger.info("job run completed", extra=final.as_dict())
        else:
            self.logger.error("job run did not complete", extra=final.as_dict())
        return final

    async def _load(self, input_path: str | Path, report: RunReportBuilder) -> Batch:
        async def attempt() -> Batch:
            report.load_attempts += 1
            return await asyncio.to_thread(self.loader.load, input_path)

        return await self.retry_policy.execute_async(attempt, context=f"load {input_path}")

    def _quarantine(
        self,
        batch: Batch,
        invalid_outcomes: list[ValidationOutcome],
        output_path: str | Path,
        report: RunReportBuilder,
    ) -> None:
        run_timestamp = report.started_at
        entries = [QuarantineEntry.from_rejected_line(rejected, run_timestamp) for rejected in batch.rejected]
        entries.extend(QuarantineEntry.from_outcome(outcome, run_timestamp) for outcome in invalid_outcomes)

        sink = self.quarantine or FileQuarantineWriter(Path(output_path) / "quarantine")
        try:
            report.quarantine_location = sink.quarantine(entries, run_timestamp, report.run_key)
        except Exception as exc:
            # Injected sinks may raise anything; the run still completes with a warning.
            report.warnings.append(f"quarantine write failed: {type(exc).__name__}: {exc}")
            self.logger.warning(
                "quarantine write failed, continuing",
                exc_info=True,
                extra={"run_key": report.run_key, "entries": len(entries), "error": str(exc)},
            )

    def _write_report(
        self,
        report: RunReportBuilder,
        summaries: list[AccountSummary],
        output_path: str | Path,
        finished_at: datetime,
    ) -> None:
        path = Path(output_path) / "reports" / f"{report.run_key}.json"
        report.report_location = str(path)
        payload = report.build(finished_at).as_dict()
        payload["account_summaries"] = [summary.as_dict() for summary in summaries]
        try:
            write_json(path, payload)
        except OSError as exc:
            report.report_location = None
            report.warnings.append(f"run report write failed: {exc}")
            self.logger.warning("run report write failed", extra={"run_key": report.run_key, "error": str(exc)})

    def _checkpoint(self, cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise JobCancelledError("run cancelled before stage start")
