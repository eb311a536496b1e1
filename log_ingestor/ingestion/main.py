"""
ingestion/main.py
=================
Command-line entry point.

    log-ingestor process-files -b BUCKET [-p PREFIX]
    log-ingestor watch -b BUCKET [-p PREFIX] [-i SECONDS]
    log-ingestor process-local PATH
    log-ingestor requeue-failed -b BUCKET [--max-failures N]

Exit codes: 0 success, 1 unhandled error, 2 usage error (argparse).
"""

import argparse
import logging
import sys
from typing import Optional

from config.settings import Settings, load_settings
from ingestion.scheduler import IngestionScheduler
from ingestion.storage_client import ObjectStoreClient
from ingestion.watch import run_watch
from processing import metrics
from processing.file_processor import FileProcessor, default_retry_policy
from storage.db import close_pool, get_pool
from storage.job_store import JobStore
from storage.record_sink import RecordSink

logger = logging.getLogger("ingestor")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        stream=sys.stdout,
    )
    # boto's debug output drowns everything else
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_processor(settings: Settings, object_store=None) -> FileProcessor:
    conn_pool = get_pool(settings.dsn)
    return FileProcessor(
        object_store,
        RecordSink(conn_pool),
        retry_policy=default_retry_policy(settings.max_attempts, settings.retry_delay_seconds),
        batch_size=settings.batch_size,
    )


def build_scheduler(settings: Settings) -> IngestionScheduler:
    object_store = ObjectStoreClient.from_settings(settings)
    return IngestionScheduler(
        JobStore(get_pool(settings.dsn)),
        object_store,
        build_processor(settings, object_store),
        page_size=settings.page_size,
        stale_after=settings.stale_after_seconds,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="log-ingestor", description="CLI for processing log files")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("process-files", help="Process log files from an S3 bucket once")
    p.add_argument("-b", "--bucket", required=True, help="S3 bucket name")
    p.add_argument("-p", "--prefix", default=None, help="Optional prefix to filter files")

    w = sub.add_parser("watch", help="Continuously watch an S3 bucket for new log files")
    w.add_argument("-b", "--bucket", required=True, help="S3 bucket name")
    w.add_argument("-p", "--prefix", default=None, help="Optional prefix to filter files")
    w.add_argument("-i", "--interval", type=float, default=60.0, help="Check interval in seconds")

    loc = sub.add_parser("process-local", help="Ingest a local .json or .json.gz file")
    loc.add_argument("path")

    r = sub.add_parser("requeue-failed", help="Move failed jobs back to pending")
    r.add_argument("-b", "--bucket", required=True, help="S3 bucket name")
    r.add_argument("--max-failures", type=int, default=3,
                   help="Only requeue jobs that failed fewer times than this")
    return parser


def run_command(args: argparse.Namespace, settings: Settings) -> None:
    if args.command == "process-files":
        build_scheduler(settings).run_once(args.bucket, args.prefix)

    elif args.command == "watch":
        if args.interval <= 0:
            raise ValueError("--interval must be positive")
        if settings.metrics_enabled:
            metrics.start_metrics_server(settings.metrics_port)
        run_watch(build_scheduler(settings), args.bucket, args.prefix, args.interval)

    elif args.command == "process-local":
        result = build_processor(settings).process_local(args.path)
        logger.info(
            "%d record(s) written, %d skipped.",
            result.records_written, result.records_skipped,
        )

    elif args.command == "requeue-failed":
        count = JobStore(get_pool(settings.dsn)).requeue_failed(args.bucket, args.max_failures)
        logger.info("Requeued %d failed job(s) in %s.", count, args.bucket)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ValueError as exc:
        configure_logging()
        logger.error("Invalid configuration: %s", exc)
        return 1
    configure_logging(settings.log_level)

    try:
        run_command(args, settings)
    except Exception as exc:
        logger.exception("Error running %s: %s", args.command, exc)
        return 1
    finally:
        close_pool()
    return 0


if __name__ == "__main__":
    sys.exit(main())
