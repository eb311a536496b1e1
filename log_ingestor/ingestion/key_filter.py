"""
ingestion/key_filter.py
=======================
Batch files are named after the moment they were cut, e.g.

    logs/2024-01-02T00:00:00.000Z.json.gz

Discovery compares that embedded timestamp against the newest ingested
record (the watermark) and only enqueues files that are strictly newer.
A key whose name does not parse is kept: its recency is unknown and
dropping it would lose data silently. The job table's unique constraint
stops it from being enqueued twice.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

# Longest first so ".json.gz" wins over ".gz"
_SUFFIXES = (".json.gz", ".json", ".gz")


def extract_key_timestamp(key: str) -> Optional[datetime]:
    """Timestamp embedded in the key's file name (UTC), or None."""
    name = key.rsplit("/", 1)[-1]
    for suffix in _SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    if not name:
        return None

    if name.endswith(("Z", "z")):
        name = name[:-1] + "+00:00"
    try:
        ts = datetime.fromisoformat(name)
    except ValueError:
        return None

    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def filter_newer_than(keys: Iterable[str], watermark: Optional[datetime]) -> list[str]:
    """Keys strictly newer than `watermark`, in input order. None keeps all."""
    keys = list(keys)
    if watermark is None:
        return keys
    if watermark.tzinfo is None:
        watermark = watermark.replace(tzinfo=timezone.utc)

    kept = []
    for key in keys:
        ts = extract_key_timestamp(key)
        if ts is None:
            logger.warning("Could not extract a timestamp from key %s; including it.", key)
            kept.append(key)
        elif ts > watermark:
            kept.append(key)
    return kept
