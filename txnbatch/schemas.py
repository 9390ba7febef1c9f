import csv
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import StrEnum
import io


def csv_line(values: list[str], *, delimiter: str = ",") -> str:
    buffer = io.StringIO()
    csv.writer(buffer, delimiter=delimiter, lineterminator="").writerow(values)
    return buffer.getvalue()


class JobState(StrEnum):
    IDLE = "idle"
    LOADING = "loading"
    VALIDATING = "validating"
    PROCESSING = "processing"
    QUARANTINING = "quarantining"
    COMPLETED = "completed"
    FAILED = "failed"


class RunOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class TransactionRecord:
    transaction_id: str
    account_id: str
    timestamp: datetime
    amount: Decimal
    currency: str
    description: str
    category: str = ""
    merchant: str = ""
    line_number: int = 0

    def as_dict(self) -> dict[str, object]:
        return {
            "transaction_id": self.transaction_id,
            "account_id": self.account_id,
            "timestamp": self.timestamp.isoformat(),
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "category": self.category,
            "merchant": self.merchant,
        }


@dataclass(frozen=True)
class RejectedLine:
    line_number: int
    raw: str
    reason: str


@dataclass(frozen=True)
class Batch:
    source_path: str
    loaded_at: datetime
    records: tuple[TransactionRecord, ...]
    rejected: tuple[RejectedLine, ...] = ()

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class ValidationOutcome:
    record: TransactionRecord
    reasons: tuple[str, ...] = ()

    @property
    def is_valid(self) -> bool:
        return not self.reasons

    @classmethod
    def valid(cls, record: TransactionRecord) -> "ValidationOutcome":
        return cls(record=record)

    @classmethod
    def invalid(cls, record: TransactionRecord, reasons: list[str] | tuple[str, ...]) -> "ValidationOutcome":
        if not reasons:
            raise ValueError("an invalid outcome needs at least one reason")
        return cls(record=record, reasons=tuple(reasons))


@dataclass(frozen=True)
class TransactionEntity:
    transaction_id: str
    account_id: str
    booked_at: datetime
    amount: Decimal
    currency: str
    category: str
    merchant: str
    description: str


@dataclass(frozen=True)
class ProcessedResult:
    entity: TransactionEntity
    amount_minor: int
    direction: str
    booking_date: date


@dataclass(frozen=True)
class AccountSummary:
    account_id: str
    currency: str
    transaction_count: int
    total_amount: Decimal
    total_credits: Decimal
    total_debits: Decimal
    largest_amount: Decimal
    first_seen: datetime
    last_seen: datetime
    last_description: str
    category_totals: tuple[tuple[str, Decimal], ...]

    def as_dict(self) -> dict[str, object]:
        return {
            "account_id": self.account_id,
            "currency": self.currency,
            "transaction_count": self.transaction_count,
            "total_amount": str(self.total_amount),
            "total_credits": str(self.total_credits),
            "total_debits": str(self.total_debits),
            "largest_amount": str(self.largest_amount),
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "last_description": self.last_description,
            "category_totals": {category: str(total) for category, total in self.category_totals},
        }


@dataclass(frozen=True)
class QuarantineEntry:
    record: TransactionRecord | None
    raw: str
    line_number: int
    reasons: tuple[str, ...]
    run_timestamp: datetime

    @classmethod
    def from_outcome(cls, outcome: ValidationOutcome, run_timestamp: datetime) -> "QuarantineEntry":
        record = outcome.record
        return cls(
            record=record,
            raw=csv_line([str(value) for value in record.as_dict().values()]),
            line_number=record.line_number,
            reasons=outcome.reasons,
            run_timestamp=run_timestamp,
        )

    @classmethod
    def from_rejected_line(cls, rejected: RejectedLine, run_timestamp: datetime) -> "QuarantineEntry":
        return cls(
            record=None,
            raw=rejected.raw,
            line_number=rejected.line_number,
            reasons=(rejected.reason,),
            run_timestamp=run_timestamp,
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "run_timestamp": self.run_timestamp.isoformat(),
            "line_number": self.line_number,
            "reasons": list(self.reasons),
            "record": self.record.as_dict() if self.record is not None else None,
            "raw": self.raw,
        }


@dataclass(frozen=True)
class JobRunReport:
    run_key: str
    job_name: str
    input_path: str
    output_path: str
    started_at: datetime
    finished_at: datetime
    duration_seconds: float
    status: JobState
    outcome: RunOutcome
    final_state: JobState
    loaded: int
    valid: int
    invalid: int
    rejected_lines: int
    persisted: int
    load_attempts: int
    quarantine_location: str | None
    report_location: str | None
    error: str | None
    error_type: str | None
    warnings: tuple[str, ...]

    @property
    def succeeded(self) -> bool:
        return self.status == JobState.COMPLETED

    def as_dict(self) -> dict[str, object]:
        return {
            "run_key": self.run_key,
            "job_name": self.job_name,
            "input_path": self.input_path,
            "output_path": self.output_path,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "status": str(self.status),
            "outcome": str(self.outcome),
            "final_state": str(self.final_state),
            "loaded": self.loaded,
            "valid": self.valid,
            "invalid": self.invalid,
            "rejected_lines": self.rejected_lines,
            "persisted": self.persisted,
            "load_attempts": self.load_attempts,
            "quarantine_location": self.quarantine_location,
            "report_location": self.report_location,
            "error": self.error,
            "error_type": self.error_type,
            "warnings": list(self.warnings),
        }


@dataclass
class RunReportBuilder:
    """Mutable counters for one run; `build()` freezes them into a JobRunReport."""

    run_key: str
    job_name: str
    input_path: str
    output_path: str
    started_at: datetime
    state: JobState = JobState.IDLE
    loaded: int = 0
    valid: int = 0
    invalid: int = 0
    rejected_lines: int = 0
    persisted: int = 0
    load_attempts: int = 0
    quarantine_location: str | None = None
    report_location: str | None = None
    error: str | None = None
    error_type: str | None = None
    failed_in: JobState | None = None
    warnings: list[str] = field(default_factory=list)

    def fail(self, exc: BaseException) -> None:
        self.failed_in = self.state
        self.error = str(exc)
        self.error_type = type(exc).__name__
        self.state = JobState.FAILED

    def outcome(self) -> RunOutcome:
        if self.state == JobState.FAILED:
            return RunOutcome.FAILED
        if self.invalid or self.rejected_lines or self.warnings:
            return RunOutcome.PARTIALLY_SUCCEEDED
        return RunOutcome.SUCCEEDED

    def build(self, finished_at: datetime) -> JobRunReport:
        return JobRunReport(
            run_key=self.run_key,
            job_name=self.job_name,
            input_path=self.input_path,
            output_path=self.output_path,
            started_at=self.started_at,
            finished_at=finished_at,
            duration_seconds=(finished_at - self.started_at).total_seconds(),
            status=JobState.FAILED if self.state == JobState.FAILED else JobState.COMPLETED,
            outcome=self.outcome(),
            final_state=self.failed_in or self.state,
            loaded=self.loaded,
            valid=self.valid,
            invalid=self.invalid,
            rejected_lines=self.rejected_lines,
            persisted=self.persisted,
            load_attempts=self.load_attempts,
            quarantine_location=self.quarantine_location,
            report_location=self.report_location,
            error=self.error,
            error_type=self.error_type,
            warnings=tuple(self.warnings),
        )
