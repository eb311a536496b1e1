"""
storage/job_store.py
====================
Durable per-file ingestion state (`ingestion_jobs`).

Concurrency model
-----------------
Several ingestor processes may run against the same table at once
(one watch loop per replica, overlapping cron invocations). Nothing here
relies on in-process locking:

  claim      one statement: a `FOR UPDATE SKIP LOCKED` CTE picks the page,
             the UPDATE flips it to processing and RETURNs the rows. Two
             workers racing for the same page never get the same row.
  discovery  `INSERT ... ON CONFLICT (key, bucket) DO NOTHING`. The unique
             constraint is the arbiter, not a prior existence check.
  terminal   mark_completed / mark_failed compare-and-swap on `version`
             when the caller passes the version it claimed.
  reclaim    bulk conditional UPDATE; idempotent.

State machine:
  pending --claim--> processing --ok--> completed
                     processing --error--> failed
                     processing --stale--> pending
"""

import enum
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Iterable, Optional

from psycopg2.extras import Json, RealDictCursor, execute_values

from processing.errors import JobConflictError
from storage.db import transaction

logger = logging.getLogger(__name__)


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IngestionJob:
    key: str
    bucket: str
    status: JobStatus = JobStatus.PENDING
    claimed_at: Optional[datetime] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 1
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: dict) -> "IngestionJob":
        return cls(
            id=row["id"],
            key=row["key"],
            bucket=row["bucket"],
            status=JobStatus(row["status"]),
            claimed_at=row.get("claimed_at"),
            metadata=row.get("metadata") or {},
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            version=row["version"],
        )


def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json(value: Optional[dict]) -> Json:
    return Json(value or {}, dumps=partial(json.dumps, default=_json_default))


_COLUMNS = "id, key, bucket, status, claimed_at, metadata, created_at, updated_at, version"

CLAIM_SQL = f"""
    WITH eligible AS (
        SELECT id
        FROM ingestion_jobs
        WHERE status = 'pending'
           OR (status = 'processing'
               AND claimed_at < NOW() - make_interval(secs => %(stale_after)s))
        ORDER BY created_at ASC, id ASC
        LIMIT %(page_size)s
        FOR UPDATE SKIP LOCKED
    )
    UPDATE ingestion_jobs AS j
    SET status     = 'processing',
        claimed_at = NOW(),
        updated_at = NOW(),
        version    = j.version + 1,
        metadata   = COALESCE(j.metadata, '{{}}'::jsonb)
                     || jsonb_build_object('batchClaimedAt', NOW())
    FROM eligible
    WHERE j.id = eligible.id
    RETURNING {", ".join("j." + c.strip() for c in _COLUMNS.split(","))}
"""

COMPLETE_SQL = """
    UPDATE ingestion_jobs
    SET status     = 'completed',
        updated_at = NOW(),
        version    = version + 1,
        metadata   = COALESCE(metadata, '{}'::jsonb) || %(metadata)s::jsonb
    WHERE key = %(key)s AND bucket = %(bucket)s
"""

FAIL_SQL = """
    UPDATE ingestion_jobs
    SET status     = 'failed',
        updated_at = NOW(),
        version    = version + 1,
        metadata   = COALESCE(metadata, '{}'::jsonb)
                     || %(metadata)s::jsonb
                     || jsonb_build_object(
                            'error',        %(error)s::text,
                            'lastAttempt',  NOW(),
                            'failureCount', COALESCE((metadata->>'failureCount')::int, 0) + 1
                        )
    WHERE key = %(key)s AND bucket = %(bucket)s
"""

# Appended to COMPLETE_SQL / FAIL_SQL for compare-and-swap updates
CAS_CLAUSE = " AND version = %(expected_version)s AND status = 'processing'"

RECLAIM_SQL = """
    UPDATE ingestion_jobs
    SET status     = 'pending',
        claimed_at = NULL,
        updated_at = NOW(),
        version    = version + 1,
        metadata   = COALESCE(metadata, '{}'::jsonb) || jsonb_build_object(
                         'lastStuckReset', NOW(),
                         'previousStatus', status,
                         'stuckResets',    COALESCE(metadata->'stuckResets', '[]'::jsonb)
                                           || jsonb_build_array(NOW())
                     )
    WHERE status = 'processing'
      AND claimed_at < NOW() - make_interval(secs => %(stale_after)s)
"""

INSERT_SQL = """
    INSERT INTO ingestion_jobs (key, bucket, status, metadata)
    VALUES %s
    ON CONFLICT (key, bucket) DO NOTHING
    RETURNING id
"""

REQUEUE_FAILED_SQL = """
    UPDATE ingestion_jobs
    SET status     = 'pending',
        claimed_at = NULL,
        updated_at = NOW(),
        version    = version + 1,
        metadata   = COALESCE(metadata, '{}'::jsonb)
                     || jsonb_build_object('requeuedAt', NOW())
    WHERE bucket = %(bucket)s
      AND status = 'failed'
      AND COALESCE((metadata->>'failureCount')::int, 0) < %(max_failures)s
"""

WATERMARK_SQL = "SELECT MAX(timestamp) FROM logs"

GET_JOB_SQL = f"SELECT {_COLUMNS} FROM ingestion_jobs WHERE key = %s AND bucket = %s"


class JobStore:
    def __init__(self, conn_pool):
        self._pool = conn_pool

    # ── Claiming ─────────────────────────────────────────────────────────────

    def claim_pending_page(self, page_size: int, stale_after: float) -> list[IngestionJob]:
        """
        Atomically claim up to `page_size` pending (or stale processing) jobs,
        oldest first. `stale_after` is in seconds.
        """
        with transaction(self._pool) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(CLAIM_SQL, {"page_size": page_size, "stale_after": stale_after})
                rows = cur.fetchall()

        jobs = [IngestionJob.from_row(r) for r in rows]
        # RETURNING carries no ordering guarantee
        jobs.sort(key=lambda j: (j.created_at, j.id))
        if jobs:
            logger.info("Claimed %d job(s).", len(jobs))
        return jobs

    # ── Terminal states ──────────────────────────────────────────────────────

    def _update_terminal(self, sql: str, params: dict, expected_version: Optional[int]) -> bool:
        if expected_version is not None:
            sql += CAS_CLAUSE
            params["expected_version"] = expected_version

        with transaction(self._pool) as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                updated = cur.rowcount

        if updated == 0:
            if expected_version is not None:
                raise JobConflictError(params["key"], params["bucket"], expected_version)
            logger.warning("No job row for %s/%s.", params["bucket"], params["key"])
            return False
        return True

    def mark_completed(
        self,
        key: str,
        bucket: str,
        metadata: Optional[dict] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        return self._update_terminal(
            COMPLETE_SQL,
            {"key": key, "bucket": bucket, "metadata": _json(metadata)},
            expected_version,
        )

    def mark_failed(
        self,
        key: str,
        bucket: str,
        error_message: str,
        metadata: Optional[dict] = None,
        expected_version: Optional[int] = None,
    ) -> bool:
        return self._update_terminal(
            FAIL_SQL,
            {
                "key": key,
                "bucket": bucket,
                "error": error_message,
                "metadata": _json(metadata),
            },
            expected_version,
        )

    # ── Recovery ─────────────────────────────────────────────────────────────

    def reclaim_stuck_jobs(self, stale_after: float) -> int:
        """Reset processing jobs claimed more than `stale_after` seconds ago."""
        with transaction(self._pool) as conn:
            with conn.cursor() as cur:
                cur.execute(RECLAIM_SQL, {"stale_after": stale_after})
                return cur.rowcount

    def requeue_failed(self, bucket: str, max_failures: int) -> int:
        """
        Operator action: move failed jobs of `bucket` that have failed fewer
        than `max_failures` times back to pending.
        """
        with transaction(self._pool) as conn:
            with conn.cursor() as cur:
                cur.execute(REQUEUE_FAILED_SQL, {"bucket": bucket, "max_failures": max_failures})
                return cur.rowcount

    # ── Discovery ────────────────────────────────────────────────────────────

    def insert_new_if_absent(self, jobs: Iterable[IngestionJob]) -> int:
        """Insert jobs as pending; existing (key, bucket) pairs are skipped."""
        rows = []
        seen = set()
        for job in jobs:
            if (job.key, job.bucket) in seen:
                continue
            seen.add((job.key, job.bucket))
            rows.append((job.key, job.bucket, _json(job.metadata)))
        if not rows:
            return 0

        with transaction(self._pool) as conn:
            with conn.cursor() as cur:
                inserted = execute_values(
                    cur,
                    INSERT_SQL,
                    rows,
                    template="(%s, %s, 'pending', %s)",
                    fetch=True,
                )
        return len(inserted)

    def most_recent_record_timestamp(self) -> Optional[datetime]:
        with transaction(self._pool) as conn:
            with conn.cursor() as cur:
                cur.execute(WATERMARK_SQL)
                row = cur.fetchone()
        return row[0] if row else None

    def get_job(self, key: str, bucket: str) -> Optional[IngestionJob]:
        with transaction(self._pool) as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(GET_JOB_SQL, (key, bucket))
                row = cur.fetchone()
        return IngestionJob.from_row(row) if row else None
