import csv
from datetime import UTC, datetime
from decimal import Decimal
import io
from pathlib import Path

import pytest

from txnbatch.errors import LoadError
from txnbatch.loader import CsvTransactionLoader, parse_amount, parse_timestamp


def test_load_parses_records_in_file_order(write_csv) -> None:
    path = write_csv(
        [
            "T-1,ACC-1,2026-03-01T10:15:00Z,120.50,usd,Coffee beans,groceries,Bean Co",
            "T-2,ACC-2,2026-03-02,99.99,EUR,Monthly rent,housing,",
        ]
    )

    batch = CsvTransactionLoader().load(path)

    assert batch.source_path == str(path)
    assert [record.transaction_id for record in batch.records] == ["T-1", "T-2"]
    first = batch.records[0]
    assert first.amount == Decimal("120.50")
    assert isinstance(first.amount, Decimal)
    assert first.timestamp == datetime(2026, 3, 1, 10, 15, tzinfo=UTC)
    assert first.line_number == 2
    assert batch.records[1].timestamp == datetime(2026, 3, 2, tzinfo=UTC)
    assert batch.rejected == ()


def test_optional_columns_may_be_absent(write_csv) -> None:
    path = write_csv(
        ["T-1,ACC-1,2026-03-01,10.00,USD,Lunch"],
        header="Transaction_ID, Account_ID, Timestamp, Amount, Currency, Description",
    )

    record = CsvTransactionLoader().load(path).records[0]

    assert record.category == ""
    assert record.merchant == ""


def test_malformed_lines_are_skipped_and_reported(write_csv) -> None:
    path = write_csv(
        [
            "T-1,ACC-1,2026-03-01,10.00,USD,Lunch,food,Deli",
            "T-2,ACC-1,2026-03-01,ten dollars,USD,Dinner,food,Deli",
            "T-3,ACC-1,yesterday,5.00,USD,Snack,food,Deli",
            "T-4,ACC-1,2026-03-01,5.00,USD",
            ",ACC-1,2026-03-01,5.00,USD,No id,food,Deli",
            "T-5,ACC-1,2026-03-01,NaN,USD,Not a number,food,Deli",
            "",
            "T-1,ACC-9,2026-03-02,1.00,USD,Repeat,food,Deli",
        ]
    )

    batch = CsvTransactionLoader().load(path)

    assert [record.transaction_id for record in batch.records] == ["T-1"]
    reasons = [rejected.reason for rejected in batch.rejected]
    assert len(reasons) == 6
    assert "line 3" in reasons[0] and "amount" in reasons[0]
    assert "line 4" in reasons[1] and "timestamp" in reasons[1]
    assert "expected 8 fields, got 5" in reasons[2]
    assert "transaction_id is required" in reasons[3]
    assert "not finite" in reasons[4]
    assert "duplicate transaction_id 'T-1'" in reasons[5] and "line 2" in reasons[5]
    assert batch.rejected[0].raw == "T-2,ACC-1,2026-03-01,ten dollars,USD,Dinner,food,Deli"


def test_missing_file_raises_load_error(tmp_path: Path) -> None:
    with pytest.raises(LoadError) as excinfo:
        CsvTransactionLoader().load(tmp_path / "nope.csv")
    assert excinfo.value.reason == "file not found"


def test_directory_is_not_loadable(tmp_path: Path) -> None:
    with pytest.raises(LoadError):
        CsvTransactionLoader().load(tmp_path)


def test_empty_file_raises_load_error(tmp_path: Path) -> None:
    path = tmp_path / "empty.csv"
    path.write_text("", encoding="utf-8")
    with pytest.raises(LoadError) as excinfo:
        CsvTransactionLoader().load(path)
    assert excinfo.value.reason == "file is empty"


def test_header_without_required_columns_raises_load_error(write_csv) -> None:
    path = write_csv(["1,2,3"], header="id,value,when")
    with pytest.raises(LoadError) as excinfo:
        CsvTransactionLoader().load(path)
    assert "account_id" in excinfo.value.reason


def test_undecodable_file_raises_load_error(tmp_path: Path) -> None:
    path = tmp_path / "binary.csv"
    path.write_bytes(b"\xff\xfe\x00\x00garbage")
    with pytest.raises(LoadError):
        CsvTransactionLoader().load(path)


def test_loading_does_not_modify_the_source_file(write_csv) -> None:
    path = write_csv(["T-1,ACC-1,2026-03-01,10.00,USD,Lunch,food,Deli"])
    before = path.read_bytes()
    mtime = path.stat().st_mtime_ns

    loader = CsvTransactionLoader()
    loader.load(path)
    loader.load(path)

    assert path.read_bytes() == before
    assert path.stat().st_mtime_ns == mtime


def test_parse_helpers() -> None:
    assert parse_amount(" -1250.75 ") == Decimal("-1250.75")
    assert parse_timestamp("2026-03-01T12:00:00+02:00") == datetime(2026, 3, 1, 10, 0, tzinfo=UTC)
    with pytest.raises(ValueError):
        parse_amount("Infinity")
    with pytest.raises(ValueError, match="separator"):
        parse_amount("1,250.75")


def test_amount_with_embedded_comma_is_rejected_not_rescaled(write_csv) -> None:
    path = write_csv(
        [
            'T-1,ACC-1,2026-03-01,"1,2",USD,Lunch,food,Deli',
            "T-2,ACC-1,2026-03-01,1.20,USD,Dinner,food,Deli",
        ]
    )

    batch = CsvTransactionLoader().load(path)

    assert [record.transaction_id for record in batch.records] == ["T-2"]
    assert len(batch.rejected) == 1
    assert "line 2" in batch.rejected[0].reason
    assert "separator" in batch.rejected[0].reason


def test_only_cr_and_lf_end_a_row(write_csv) -> None:
    path = write_csv(
        [
            "T-1,ACC-1,2026-03-01,10.00,USD,Lunch\x0cwith form feed,food,Deli",
            "T-2,ACC-1,2026-03-01,11.00,USD,Tab\x0bwith breaks\x85inside,food,Deli",
            "T-3,ACC-1,2026-03-01,12.00,USD,Plain,food,Deli",
        ]
    )

    batch = CsvTransactionLoader().load(path)

    assert batch.rejected == ()
    assert [record.transaction_id for record in batch.records] == ["T-1", "T-2", "T-3"]
    assert batch.records[0].description == "Lunch\x0cwith form feed"
    assert batch.records[1].description == "Tab\x0bwith breaks\x85inside"
    assert [record.line_number for record in batch.records] == [2, 3, 4]


def test_quoted_field_may_span_lines(write_csv) -> None:
    path = write_csv(
        [
            'T-1,ACC-1,2026-03-01,10.00,USD,"Lunch\nwith team",food,Deli',
            'T-2,ACC-1,2026-03-01,oops,USD,"Dinner, late\nand long",food,Deli',
            "T-3,ACC-1,2026-03-01,12.00,USD,Plain,food,Deli",
        ]
    )

    batch = CsvTransactionLoader().load(path)

    assert [record.transaction_id for record in batch.records] == ["T-1", "T-3"]
    assert batch.records[0].description == "Lunch\nwith team"
    assert [record.line_number for record in batch.records] == [2, 6]

    rejected = batch.rejected[0]
    assert rejected.line_number == 4
    assert "line 4" in rejected.reason
    assert next(csv.reader(io.StringIO(rejected.raw, newline="")))[5] == "Dinner, late\nand long"
