"""
ingestion/scheduler.py
======================
One ingestion pass over a bucket.

    run_once(bucket, prefix)
      1. reclaim stuck jobs        (best effort: errors are logged, never raised)
      2. drain                     claim a page -> process each job -> mark it
                                   until a page comes back empty
      3. discover                  only when step 2 processed nothing: list keys,
                                   keep those newer than the watermark, insert
                                   them as pending, and if any were new go back
                                   to step 1 so they are drained in this call

Correctness under several concurrent schedulers comes from the job store's
atomic statements, not from anything held in this process. A job's failure
is recorded on its row and never stops the page or the pass; only errors
from the store itself (unreachable database) leave run_once.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from ingestion.key_filter import filter_newer_than
from processing import metrics
from processing.errors import JobConflictError
from storage.job_store import IngestionJob

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
DEFAULT_STALE_AFTER = 5 * 60.0   # seconds


@dataclass
class PassSummary:
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_conflicted: int = 0
    jobs_reclaimed: int = 0
    jobs_discovered: int = 0
    passes: int = 0

    @property
    def jobs_processed(self) -> int:
        return self.jobs_completed + self.jobs_failed + self.jobs_conflicted


class IngestionScheduler:
    def __init__(
        self,
        job_store,
        object_store,
        file_processor,
        page_size: int = DEFAULT_PAGE_SIZE,
        stale_after: float = DEFAULT_STALE_AFTER,
    ):
        self._jobs = job_store
        self._objects = object_store
        self._processor = file_processor
        self.page_size = page_size
        self.stale_after = stale_after

    def run_once(
        self,
        bucket: str,
        prefix: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> PassSummary:
        summary = PassSummary()
        while True:
            summary.passes += 1
            summary.jobs_reclaimed += self.reclaim_stuck_jobs()

            processed = self.drain(summary, stop_event)
            metrics.set_gauge("ingestor_last_pass_jobs", processed)
            if processed or _stopped(stop_event):
                break

            logger.info("No pending jobs found, checking %s for new files...", bucket)
            inserted = self.discover(bucket, prefix)
            summary.jobs_discovered += inserted
            if not inserted:
                break

        logger.info(
            "Ingestion pass done: %d completed, %d failed, %d conflicted, "
            "%d reclaimed, %d discovered.",
            summary.jobs_completed, summary.jobs_failed, summary.jobs_conflicted,
            summary.jobs_reclaimed, summary.jobs_discovered,
        )
        return summary

    # ── Step 1: stuck-job reclamation ────────────────────────────────────────

    def reclaim_stuck_jobs(self) -> int:
        try:
            count = self._jobs.reclaim_stuck_jobs(self.stale_after)
        except Exception:
            logger.exception("Error requeuing stuck jobs; continuing.")
            return 0
        if count:
            logger.info("Requeued %d stuck job(s).", count)
            metrics.inc_counter("ingestor_jobs_reclaimed_total", count)
        return count

    # ── Step 2: drain pending work ───────────────────────────────────────────

    def drain(self, summary: PassSummary, stop_event: Optional[threading.Event] = None) -> int:
        """Claim and process pages until none are left. Returns jobs handled."""
        processed = 0
        while not _stopped(stop_event):
            jobs = self._jobs.claim_pending_page(self.page_size, self.stale_after)
            if not jobs:
                break
            for job in jobs:
                self._run_job(job, summary)
                processed += 1

        if _stopped(stop_event):
            logger.info("Stop requested; no further pages will be claimed.")
        return processed

    def _run_job(self, job: IngestionJob, summary: PassSummary) -> None:
        try:
            with metrics.timed("ingestor_job_seconds"):
                result = self._processor.process(job.bucket, job.key)
                details = self._objects.get_details(job.bucket, job.key)
        except Exception as exc:
            logger.error("Error processing file %s: %s", job.key, exc)
            self._mark(summary, "failed", job, error=str(exc) or type(exc).__name__)
            return

        self._mark(
            summary, "completed", job,
            metadata={
                "size": details.get("size"),
                "lastModified": details.get("lastModified"),
                "recordsWritten": result.records_written,
                "recordsSkipped": result.records_skipped,
            },
        )
        logger.info(
            "Successfully processed file: %s (%d records, %d skipped)",
            job.key, result.records_written, result.records_skipped,
        )

    def _mark(self, summary: PassSummary, status: str, job: IngestionJob,
              metadata: Optional[dict] = None, error: Optional[str] = None) -> None:
        try:
            if status == "completed":
                self._jobs.mark_completed(
                    job.key, job.bucket, metadata, expected_version=job.version
                )
                summary.jobs_completed += 1
            else:
                self._jobs.mark_failed(
                    job.key, job.bucket, error, metadata, expected_version=job.version
                )
                summary.jobs_failed += 1
        except JobConflictError as exc:
            # Reclaimed and picked up by another worker while we processed it
            logger.warning("%s; leaving it to the current owner.", exc)
            summary.jobs_conflicted += 1
            metrics.inc_counter("ingestor_jobs_total", labels={"status": "conflict"})
            return
        metrics.inc_counter("ingestor_jobs_total", labels={"status": status})

    # ── Step 3: discovery ────────────────────────────────────────────────────

    def discover(self, bucket: str, prefix: Optional[str] = None) -> int:
        """Enqueue keys newer than the watermark. Returns rows inserted."""
        keys = self._objects.list_keys(bucket, prefix)
        logger.info("Found %d file(s) in s3://%s/%s", len(keys), bucket, prefix or "")

        watermark = self._jobs.most_recent_record_timestamp()
        candidates = filter_newer_than(keys, watermark)
        if watermark is not None:
            logger.info(
                "Found %d file(s) newer than last log timestamp %s",
                len(candidates), watermark.isoformat(),
            )

        if not candidates:
            logger.info("No new files to process.")
            return 0

        inserted = self._jobs.insert_new_if_absent(
            [IngestionJob(key=key, bucket=bucket) for key in candidates]
        )
        logger.info("Created %d new job(s).", inserted)
        if inserted:
            metrics.inc_counter("ingestor_jobs_discovered_total", inserted)
        return inserted


def _stopped(stop_event: Optional[threading.Event]) -> bool:
    return stop_event is not None and stop_event.is_set()
