"""
processing/file_processor.py
============================
Turns one claimed batch file into rows in `logs`.

  1. fetch + gunzip under the retry policy (only DecompressionError retries)
  2. parse the payload as a JSON array; anything else fails the whole job
  3. normalize each element; a bad element is logged and skipped
  4. write records in micro-batches of `batch_size`; sink errors fail the
     job, already-committed micro-batches stay written
"""

import gzip
import json
import logging
import zlib
from dataclasses import dataclass
from typing import Optional

from processing import metrics
from processing.errors import DecompressionError, InvalidRecordError, MalformedBatchError
from processing.normalizer import NormalizedRecord, normalize_record
from processing.retry import RetryPolicy, fixed_delay

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


def _is_decompression_error(exc: BaseException) -> bool:
    return isinstance(exc, DecompressionError)


def default_retry_policy(max_attempts: int = 3, delay_seconds: float = 2.0) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=max_attempts,
        delay=fixed_delay(delay_seconds),
        retryable=_is_decompression_error,
    )


def gunzip(data: bytes) -> bytes:
    """Decompress a gzip body; corrupt or truncated input -> DecompressionError."""
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        # gzip.BadGzipFile subclasses OSError
        raise DecompressionError(f"gzip decompression failed: {exc}") from exc


@dataclass(frozen=True)
class ProcessResult:
    records_written: int = 0
    records_skipped: int = 0


class FileProcessor:
    def __init__(
        self,
        object_store,
        record_sink,
        retry_policy: Optional[RetryPolicy] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self._store = object_store
        self._sink = record_sink
        self._retry = retry_policy or default_retry_policy()
        self._batch_size = batch_size

    def process(self, bucket: str, key: str) -> ProcessResult:
        """Ingest s3://bucket/key. Raises on any job-fatal error."""
        payload = self._retry.call(
            lambda: gunzip(self._store.get_content(bucket, key)),
            description=f"Fetching {bucket}/{key}",
            on_retry=lambda attempt, exc: metrics.inc_counter(
                "ingestor_decompression_retries_total"
            ),
        )
        records = parse_batch(payload, source=f"{bucket}/{key}")
        return self._ingest(records, id_prefix=key)

    def process_local(self, path: str) -> ProcessResult:
        """Ingest a local .json or .json.gz file without job tracking."""
        with open(path, "rb") as f:
            data = f.read()
        if path.endswith(".gz"):
            data = gunzip(data)
        records = parse_batch(data, source=path)
        result = self._ingest(records, id_prefix=None)
        logger.info("Successfully processed local file: %s", path)
        return result

    def _ingest(self, raw_records: list, id_prefix: Optional[str]) -> ProcessResult:
        batch: list[NormalizedRecord] = []
        written = 0
        skipped = 0

        for index, raw in enumerate(raw_records):
            fallback_id = f"{id_prefix}#{index}" if id_prefix else None
            try:
                batch.append(normalize_record(raw, fallback_id=fallback_id))
            except InvalidRecordError as exc:
                skipped += 1
                logger.warning("Skipping log entry %d: %s", index, exc)
                logger.debug("Rejected entry: %s", raw)
                continue

            if len(batch) >= self._batch_size:
                written += self._sink.write(batch)
                batch = []

        if batch:
            written += self._sink.write(batch)

        metrics.inc_counter("ingestor_records_total", written, {"outcome": "written"})
        if skipped:
            metrics.inc_counter("ingestor_records_total", skipped, {"outcome": "skipped"})
        return ProcessResult(records_written=written, records_skipped=skipped)


def parse_batch(payload: bytes, source: str = "payload") -> list:
    """Decode a decompressed batch into its list of raw records."""
    if not payload:
        raise MalformedBatchError(f"No data was decompressed from {source}")
    try:
        records = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedBatchError(f"Invalid JSON content in {source}: {exc}") from exc
    if not isinstance(records, list):
        raise MalformedBatchError(
            f"Expected a JSON array in {source}, got {type(records).__name__}"
        )
    return records
