"""Shared fixtures: in-memory doubles for the object store, job store and record sink."""

import gzip
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest

from processing import metrics
from processing.errors import DecompressionError, JobConflictError
from processing.retry import RetryPolicy, fixed_delay
from storage.job_store import IngestionJob, JobStatus


def gzip_json(records) -> bytes:
    return gzip.compress(json.dumps(records).encode("utf-8"))


def make_record(timestamp="2024-01-01T00:00:00Z", **overrides) -> dict:
    record = {
        "level": 30,
        "timestamp": timestamp,
        "pid": 1234,
        "hostname": "api-1",
        "req": {
            "method": "GET",
            "url": "/search",
            "query": {"q": "riba"},
            "headers": {"user-agent": "pytest"},
            "remoteAddress": "127.0.0.1",
            "remotePort": 51234,
        },
        "context": "SearchController",
        "message": "search executed",
        "authUserId": 7,
        "processingTimeMs": 12,
    }
    record.update(overrides)
    return record


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeObjectStore:
    """
    Objects keyed by (bucket, key). A value may be a list of bodies, served one
    per get_content call (the last one repeats), to simulate flaky reads.
    """

    LAST_MODIFIED = datetime(2024, 1, 2, tzinfo=timezone.utc)

    def __init__(self):
        self.objects = {}
        self.get_calls = []

    def put(self, bucket, key, body):
        self.objects[(bucket, key)] = body

    def put_records(self, bucket, key, records):
        self.put(bucket, key, gzip_json(records))

    def list_keys(self, bucket, prefix=None):
        return sorted(
            key for (b, key) in self.objects
            if b == bucket and key.startswith(prefix or "") and key.endswith(".json.gz")
        )

    def get_content(self, bucket, key):
        self.get_calls.append((bucket, key))
        try:
            body = self.objects[(bucket, key)]
        except KeyError:
            raise FileNotFoundError(f"{bucket}/{key}") from None
        if isinstance(body, list):
            return body.pop(0) if len(body) > 1 else body[0]
        return body

    def get_details(self, bucket, key):
        body = self.objects[(bucket, key)]
        if isinstance(body, list):
            body = body[-1]
        return {"size": len(body), "lastModified": self.LAST_MODIFIED}

    def get_size(self, bucket, key):
        return self.get_details(bucket, key)["size"]


class InMemoryRecordSink:
    def __init__(self):
        self.records = []
        self.writes = 0
        self.fail_after_writes = None

    def write(self, records):
        if self.fail_after_writes is not None and self.writes >= self.fail_after_writes:
            raise RuntimeError("database write failed")
        self.writes += 1
        self.records.extend(records)
        return len(records)


class InMemoryJobStore:
    """Mirrors JobStore's semantics; every operation is atomic under one lock."""

    def __init__(self, sink=None, clock=None):
        self.jobs = {}
        self.sink = sink
        self.clock = clock or FakeClock()
        self._lock = threading.Lock()
        self._next_id = 1
        self.reclaim_error = None

    def _stale(self, job, stale_after):
        return (
            job.status == JobStatus.PROCESSING
            and job.claimed_at is not None
            and job.claimed_at < self.clock() - timedelta(seconds=stale_after)
        )

    def add(self, key, bucket, status=JobStatus.PENDING, claimed_at=None, metadata=None):
        with self._lock:
            job = IngestionJob(
                id=self._next_id, key=key, bucket=bucket, status=status,
                claimed_at=claimed_at, metadata=dict(metadata or {}),
                created_at=self.clock() + timedelta(microseconds=self._next_id),
                updated_at=self.clock(),
            )
            self._next_id += 1
            self.jobs[(key, bucket)] = job
            return job

    def claim_pending_page(self, page_size, stale_after):
        with self._lock:
            eligible = sorted(
                (j for j in self.jobs.values()
                 if j.status == JobStatus.PENDING or self._stale(j, stale_after)),
                key=lambda j: (j.created_at, j.id),
            )[:page_size]
            claimed = []
            for job in eligible:
                job.status = JobStatus.PROCESSING
                job.claimed_at = self.clock()
                job.version += 1
                job.metadata["batchClaimedAt"] = self.clock().isoformat()
                claimed.append(IngestionJob(**vars(job)))
            return claimed

    def _terminal(self, key, bucket, status, metadata, expected_version):
        with self._lock:
            job = self.jobs.get((key, bucket))
            if job is None:
                return False
            if expected_version is not None and (
                job.version != expected_version or job.status != JobStatus.PROCESSING
            ):
                raise JobConflictError(key, bucket, expected_version)
            job.status = status
            job.version += 1
            job.updated_at = self.clock()
            job.metadata.update(metadata)
            return True

    def mark_completed(self, key, bucket, metadata=None, expected_version=None):
        return self._terminal(key, bucket, JobStatus.COMPLETED, metadata or {}, expected_version)

    def mark_failed(self, key, bucket, error_message, metadata=None, expected_version=None):
        job = self.jobs.get((key, bucket))
        failures = (job.metadata.get("failureCount", 0) if job else 0) + 1
        merged = dict(metadata or {})
        merged.update({
            "error": error_message,
            "lastAttempt": self.clock().isoformat(),
            "failureCount": failures,
        })
        return self._terminal(key, bucket, JobStatus.FAILED, merged, expected_version)

    def reclaim_stuck_jobs(self, stale_after):
        if self.reclaim_error is not None:
            raise self.reclaim_error
        with self._lock:
            count = 0
            for job in self.jobs.values():
                if self._stale(job, stale_after):
                    job.status = JobStatus.PENDING
                    job.claimed_at = None
                    job.version += 1
                    job.metadata["lastStuckReset"] = self.clock().isoformat()
                    job.metadata["previousStatus"] = "processing"
                    job.metadata.setdefault("stuckResets", []).append(self.clock().isoformat())
                    count += 1
            return count

    def insert_new_if_absent(self, jobs):
        inserted = 0
        for job in jobs:
            with self._lock:
                exists = (job.key, job.bucket) in self.jobs
            if not exists:
                self.add(job.key, job.bucket)
                inserted += 1
        return inserted

    def most_recent_record_timestamp(self):
        if self.sink is None or not self.sink.records:
            return None
        return max(r.timestamp for r in self.sink.records)

    def get_job(self, key, bucket):
        return self.jobs.get((key, bucket))


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def sink():
    return InMemoryRecordSink()


@pytest.fixture
def job_store(sink, clock):
    return InMemoryJobStore(sink=sink, clock=clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def no_wait_retry(sleeps):
    """The production policy shape with the sleeps recorded instead of slept."""
    return RetryPolicy(
        max_attempts=3,
        delay=fixed_delay(2.0),
        retryable=lambda exc: isinstance(exc, DecompressionError),
        sleep=sleeps.append,
    )
