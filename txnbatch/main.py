import argparse
import asyncio
from dataclasses import replace
import logging

from txnbatch.config import get_settings
from txnbatch.database import build_session_factory
from txnbatch.job import build_retry_policy
from txnbatch.run_store import list_recent_runs
from txnbatch.scheduler import run_job_once, start_scheduler


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Load, validate and persist transaction batch files")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run the job once")
    run_parser.add_argument("--input", required=False, help="CSV file to load (defaults to INPUT_FILE_PATH)")
    run_parser.add_argument("--output", required=False, help="directory for reports and quarantine (defaults to OUTPUT_PATH)")

    schedule_parser = subparsers.add_parser("schedule", help="start the recurring scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    runs_parser = subparsers.add_parser("runs", help="list recent job runs")
    runs_parser.add_argument("--limit", type=int, default=20, help="how many runs to show")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url)
    if args.command == "schedule":
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return

    if args.command == "runs":
        with session_factory() as db:
            for run in list_recent_runs(db, job_name=settings.job_name, limit=args.limit):
                print(
                    f"run_key={run.run_key} status={run.status} outcome={run.outcome} "
                    f"loaded={run.loaded_records} valid={run.valid_records} invalid={run.invalid_records} "
                    f"persisted={run.persisted_records} error={run.error_type}"
                )
        return

    overrides: dict[str, str] = {}
    if args.input:
        overrides["input_file_path"] = args.input
    if args.output:
        overrides["output_path"] = args.output
    if overrides:
        settings = replace(settings, **overrides)

    report = asyncio.run(run_job_once(settings, session_factory, build_retry_policy(settings)))

    print(
        "run_key={run_key} status={status} outcome={outcome} loaded={loaded} valid={valid} invalid={invalid} rejected={rejected} persisted={persisted} attempts={attempts} error={error} report={report}".format(
            run_key=report.run_key,
            status=report.status,
            outcome=report.outcome,
            loaded=report.loaded,
            valid=report.valid,
            invalid=report.invalid,
            rejected=report.rejected_lines,
            persisted=report.persisted,
            attempts=report.load_attempts,
            error=report.error_type,
            report=report.report_location,
        )
    )
    if not report.succeeded:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
