"""
processing/errors.py
====================
Exception taxonomy for the ingestor.

  DecompressionError   transient; the file processor retries it
  MalformedBatchError  fatal for one job; the job is marked FAILED
  InvalidRecordError   one bad record; logged and skipped
  JobConflictError     another worker changed the job row first
"""


class IngestionError(Exception):
    """Base class for every error raised by the ingestor itself."""


class DecompressionError(IngestionError):
    """The object body could not be gunzipped (corrupt or truncated stream)."""


class MalformedBatchError(IngestionError):
    """The decompressed payload is not a JSON array of records."""


class InvalidRecordError(IngestionError):
    """A single raw record failed minimal validation."""


class JobConflictError(IngestionError):
    """A compare-and-swap update on a job row matched no row."""

    def __init__(self, key: str, bucket: str, expected_version: int):
        super().__init__(
            f"Job {bucket}/{key} changed underneath us (expected version {expected_version})"
        )
        self.key = key
        self.bucket = bucket
        self.expected_version = expected_version
