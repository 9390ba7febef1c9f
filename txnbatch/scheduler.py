import asyncio
import logging
import signal

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session, sessionmaker

from txnbatch.config import Settings
from txnbatch.job import TransactionJob, build_retry_policy
from txnbatch.retry import RetryPolicy
from txnbatch.run_store import record_run
from txnbatch.schemas import JobRunReport


logger = logging.getLogger(__name__)


async def run_job_once(
    settings: Settings,
    session_factory: sessionmaker[Session],
    retry_policy: RetryPolicy,
) -> JobRunReport:
    job = TransactionJob.from_settings(settings, session_factory, retry_policy=retry_policy)
    report = await job.execute_async(settings.input_file_path, settings.output_path)

    # Run history is for operators; losing it must not change the run's outcome.
    try:
        with session_factory() as db:
            record_run(db, report)
    except Exception:
        logger.exception("could not record run history", extra={"run_key": report.run_key})
    return report


async def _run_scheduled_job(
    settings: Settings,
    session_factory: sessionmaker[Session],
    retry_policy: RetryPolicy,
) -> None:
    report = await run_job_once(settings, session_factory, retry_policy)
    log = logger.error if not report.succeeded else logger.info
    log(
        "scheduled job run finished",
        extra={"run_key": report.run_key, "status": str(report.status), "outcome": str(report.outcome)},
    )


def build_scheduler(
    settings: Settings,
    session_factory: sessionmaker[Session],
    retry_policy: RetryPolicy,
) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        _run_scheduled_job,
        trigger=CronTrigger.from_crontab(settings.schedule_cron, timezone="UTC"),
        args=[settings, session_factory, retry_policy],
        id=settings.job_name,
        name=f"Recurring {settings.job_name}",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler


async def serve(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    retry_policy = build_retry_policy(settings)
    scheduler = build_scheduler(settings, session_factory, retry_policy)

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, shutdown_event.set)
        except NotImplementedError:
            logger.warning("signal handlers unavailable on this platform", extra={"signal": int(signum)})

    scheduler.start()
    job = scheduler.get_job(settings.job_name)
    logger.info(
        "scheduler started",
        extra={
            "job_name": settings.job_name,
            "schedule_cron": settings.schedule_cron,
            "next_run": str(getattr(job, "next_run_time", None)),
        },
    )

    if run_now:
        await _run_scheduled_job(settings, session_factory, retry_policy)

    await shutdown_event.wait()
    logger.info("shutting down scheduler")
    scheduler.shutdown(wait=True)


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    asyncio.run(serve(settings, session_factory, run_now=run_now))
