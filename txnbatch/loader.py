"""CSV batch loading.

Malformed rows are skipped, not fatal: every row that cannot become a
``TransactionRecord`` is kept on ``Batch.rejected`` with the reason, and the job
routes those rows to quarantine. Only whole-file problems (missing, unreadable,
empty, or a header without the required columns) raise ``LoadError``.
"""

import csv
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
import io
from pathlib import Path

from txnbatch.errors import LoadError
from txnbatch.schemas import Batch, RejectedLine, TransactionRecord, csv_line


REQUIRED_COLUMNS = ("transaction_id", "account_id", "timestamp", "amount", "currency", "description")
OPTIONAL_COLUMNS = ("category", "merchant")


def utc_now() -> datetime:
    return datetime.now(UTC)


def parse_amount(raw: str) -> Decimal:
    value = raw.strip()
    if "," in value:
        raise ValueError(f"amount {raw!r} contains a separator; write amounts without grouping commas")
    try:
        amount = Decimal(value)
    except InvalidOperation as exc:
        raise ValueError(f"amount {raw!r} is not a decimal number") from exc
    if not amount.is_finite():
        raise ValueError(f"amount {raw!r} is not finite")
    return amount


def parse_timestamp(raw: str) -> datetime:
    value = raw.strip()
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        try:
            parsed = datetime.combine(date.fromisoformat(value), datetime.min.time())
        except ValueError as exc:
            raise ValueError(f"timestamp {raw!r} is not an ISO-8601 date or datetime") from exc

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class CsvTransactionLoader:
    def __init__(self, *, encoding: str = "utf-8", delimiter: str = ",") -> None:
        self.encoding = encoding
        self.delimiter = delimiter

    def load(self, path: str | Path) -> Batch:
        input_path = Path(path)
        if not input_path.exists():
            raise LoadError(str(input_path), "file not found")
        if not input_path.is_file():
            raise LoadError(str(input_path), "not a regular file")

        try:
            with input_path.open("r", encoding=self.encoding, newline="") as infile:
                text = infile.read()
        except UnicodeDecodeError as exc:
            raise LoadError(str(input_path), f"not valid {self.encoding} text") from exc
        except OSError as exc:
            raise LoadError(str(input_path), exc.strerror or str(exc)) from exc

        # Only CR/LF end a CSV row; other Unicode line breaks are field text.
        reader = csv.reader(io.StringIO(text, newline=""), delimiter=self.delimiter)
        try:
            header = next(reader)
        except StopIteration:
            raise LoadError(str(input_path), "file is empty") from None
        except csv.Error as exc:
            raise LoadError(str(input_path), f"header is not valid CSV: {exc}") from exc

        columns = [name.strip().lower() for name in header]
        missing = [name for name in REQUIRED_COLUMNS if name not in columns]
        if missing:
            raise LoadError(str(input_path), f"header is missing columns: {', '.join(missing)}")

        records: list[TransactionRecord] = []
        rejected: list[RejectedLine] = []
        first_seen: dict[str, int] = {}

        previous_end = reader.line_num
        try:
            for row in reader:
                # A quoted field may span lines; report the line the row starts on.
                line_number = previous_end + 1
                previous_end = reader.line_num
                if not any(cell.strip() for cell in row):
                    continue

                raw = csv_line(row, delimiter=self.delimiter)
                if len(row) != len(columns):
                    rejected.append(
                        RejectedLine(line_number, raw, f"line {line_number}: expected {len(columns)} fields, got {len(row)}")
                    )
                    continue

                values = {name: cell.strip() for name, cell in zip(columns, row)}
                try:
                    record = self._to_record(values, line_number)
                except ValueError as exc:
                    rejected.append(RejectedLine(line_number, raw, f"line {line_number}: {exc}"))
                    continue

                if record.transaction_id in first_seen:
                    rejected.append(
                        RejectedLine(
                            line_number,
                            raw,
                            f"line {line_number}: duplicate transaction_id {record.transaction_id!r} "
                            f"(first seen on line {first_seen[record.transaction_id]})",
                        )
                    )
                    continue

                first_seen[record.transaction_id] = line_number
                records.append(record)
        except csv.Error as exc:
            raise LoadError(str(input_path), f"line {reader.line_num}: {exc}") from exc

        return Batch(
            source_path=str(input_path),
            loaded_at=utc_now(),
            records=tuple(records),
            rejected=tuple(rejected),
        )

    def _to_record(self, values: dict[str, str], line_number: int) -> TransactionRecord:
        transaction_id = values["transaction_id"]
        if not transaction_id:
            raise ValueError("transaction_id is required")

        return TransactionRecord(
            transaction_id=transaction_id,
            account_id=values["account_id"],
            timestamp=parse_timestamp(values["timestamp"]),
            amount=parse_amount(values["amount"]),
            currency=values["currency"],
            description=values["description"],
            category=values.get("category", ""),
            merchant=values.get("merchant", ""),
            line_number=line_number,
        )

