from collections.abc import Callable
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from txnbatch.config import Settings
from txnbatch.database import build_session_factory
from txnbatch.job import TransactionJob, build_retry_policy


HEADER = "transaction_id,account_id,timestamp,amount,currency,description,category,merchant"


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "data" / "input").mkdir(parents=True, exist_ok=True)
    (tmp_path / "outputs").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="txnbatch",
        job_name="process-transactions",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        input_file_path=str(temp_workspace / "data" / "input" / "transactions.csv"),
        output_path=str(temp_workspace / "outputs"),
        schedule_cron="*/3 * * * *",
        max_load_attempts=3,
        retry_delay_seconds=0,
        retry_backoff_multiplier=2,
        retry_max_delay_seconds=0,
        allow_negative_amounts=False,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def job(test_settings: Settings, session_factory: sessionmaker[Session]) -> TransactionJob:
    return TransactionJob.from_settings(test_settings, session_factory, retry_policy=build_retry_policy(test_settings))


@pytest.fixture()
def write_csv(test_settings: Settings) -> Callable[..., Path]:
    def _write(rows: list[str], *, header: str = HEADER, path: Path | None = None) -> Path:
        target = path or Path(test_settings.input_file_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text("\n".join([header, *rows]) + "\n", encoding="utf-8")
        return target

    return _write
