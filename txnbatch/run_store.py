import json

from sqlalchemy import select
from sqlalchemy.orm import Session

from txnbatch.db_models import JobRun, as_naive_utc
from txnbatch.schemas import JobRunReport


def get_run_by_key(db: Session, run_key: str) -> JobRun | None:
    stmt = select(JobRun).where(JobRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def list_recent_runs(db: Session, *, job_name: str | None = None, limit: int = 20) -> list[JobRun]:
    stmt = select(JobRun).order_by(JobRun.started_at.desc(), JobRun.id.desc()).limit(limit)
    if job_name:
        stmt = stmt.where(JobRun.job_name == job_name)
    return list(db.execute(stmt).scalars().all())


def record_run(db: Session, report: JobRunReport) -> JobRun:
    run = JobRun(
        run_key=report.run_key,
        job_name=report.job_name,
        input_path=report.input_path,
        status=str(report.status),
        outcome=str(report.outcome),
        final_state=str(report.final_state),
        started_at=as_naive_utc(report.started_at),
        completed_at=as_naive_utc(report.finished_at),
        duration_seconds=report.duration_seconds,
        loaded_records=report.loaded,
        valid_records=report.valid,
        invalid_records=report.invalid,
        rejected_lines=report.rejected_lines,
        persisted_records=report.persisted,
        load_attempts=report.load_attempts,
        quarantine_location=report.quarantine_location,
        report_location=report.report_location,
        error=report.error,
        error_type=report.error_type,
        warnings=json.dumps(list(report.warnings)) if report.warnings else None,
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run
