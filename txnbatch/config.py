from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    job_name: str
    database_url: str
    log_level: str
    input_file_path: str
    output_path: str
    schedule_cron: str
    max_load_attempts: int
    retry_delay_seconds: float
    retry_backoff_multiplier: float
    retry_max_delay_seconds: float
    allow_negative_amounts: bool


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "txnbatch"),
        job_name=os.getenv("JOB_NAME", "process-transactions"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./transactions.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        input_file_path=os.getenv("INPUT_FILE_PATH", "./data/input/transactions.csv"),
        output_path=os.getenv("OUTPUT_PATH", "./outputs"),
        schedule_cron=os.getenv("SCHEDULE_CRON", "*/3 * * * *"),
        max_load_attempts=int(os.getenv("MAX_LOAD_ATTEMPTS", "3")),
        retry_delay_seconds=float(os.getenv("RETRY_DELAY_SECONDS", "2")),
        retry_backoff_multiplier=float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2")),
        retry_max_delay_seconds=float(os.getenv("RETRY_MAX_DELAY_SECONDS", "30")),
        allow_negative_amounts=_env_flag("ALLOW_NEGATIVE_AMOUNTS", "false"),
    )
