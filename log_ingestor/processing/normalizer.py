"""
processing/normalizer.py
========================
Maps one loosely-typed raw log record onto the `logs` table shape.

Only `timestamp` is mandatory. Every other field falls back to a default
when it is missing or null; real zeros and empty strings are kept. Numbers
outside their column's range (or non-finite) also fall back to the default.
The whole raw record is preserved verbatim in `raw_data`, so a record that
cannot be written as strict JSON is rejected.
"""

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from processing.errors import InvalidRecordError

UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class NormalizedRecord:
    id: str
    timestamp: datetime
    level: str
    method: str
    url: str
    query: Any
    headers: dict
    context: str
    message: str
    auth_user_id: Optional[int]
    remote_address: str
    remote_port: int
    processing_time_ms: Optional[float]
    params: Optional[dict]
    raw_data: dict = field(repr=False)

    def as_row(self) -> tuple:
        """Column order used by RecordSink."""
        return (
            self.id, self.timestamp, self.level, self.method, self.url,
            self.query, self.headers, self.context, self.message,
            self.auth_user_id, self.remote_address, self.remote_port,
            self.processing_time_ms, self.params, self.raw_data,
        )


def parse_timestamp(value: Any) -> datetime:
    """ISO-8601 string or epoch milliseconds -> aware UTC datetime."""
    if isinstance(value, bool):
        raise InvalidRecordError(f"invalid timestamp: {value!r}")

    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise InvalidRecordError(f"invalid timestamp: {value!r}") from exc

    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError as exc:
            raise InvalidRecordError(f"invalid timestamp: {value!r}") from exc
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts

    raise InvalidRecordError(f"invalid timestamp: {value!r}")


INT4_RANGE = (-2**31, 2**31 - 1)   # logs.remote_port
INT8_RANGE = (-2**63, 2**63 - 1)   # logs.auth_user_id


def _or_default(value, default):
    return default if value is None else value


def _as_int(value, default, bounds):
    """`value` as an int inside `bounds`, else `default`."""
    if value is None or isinstance(value, bool):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        # OverflowError: json.loads maps 1e400 / Infinity to float('inf')
        return default
    low, high = bounds
    return number if low <= number <= high else default


def _as_float(value, default):
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if math.isfinite(number) else default


def _check_strict_json(raw: dict) -> None:
    # jsonb rejects the NaN / Infinity tokens Python's json module emits
    try:
        json.dumps(raw, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise InvalidRecordError(f"not storable as JSON: {exc}") from exc


def normalize_record(raw: Any, fallback_id: Optional[str] = None) -> NormalizedRecord:
    """
    Build a NormalizedRecord from a raw log dict.

    Raises InvalidRecordError when `raw` is not an object or has no usable
    timestamp. `fallback_id` is used when the record carries no `req.id`;
    without either a random id is generated.
    """
    if not isinstance(raw, dict):
        raise InvalidRecordError("not an object")

    ts_value = raw.get("timestamp")
    if ts_value is None or ts_value == "":
        raise InvalidRecordError("missing timestamp")
    timestamp = parse_timestamp(ts_value)
    _check_strict_json(raw)

    req = raw.get("req")
    if not isinstance(req, dict):
        req = {}

    req_id = req.get("id")
    if req_id is not None and req_id != "":
        record_id = str(req_id)
    elif fallback_id:
        record_id = fallback_id
    else:
        record_id = f"log-{uuid.uuid4().hex}"

    level = raw.get("level")
    headers = req.get("headers")
    params = req.get("params")

    return NormalizedRecord(
        id=record_id,
        timestamp=timestamp,
        level="0" if level is None else str(level),
        method=str(_or_default(req.get("method"), UNKNOWN)),
        url=str(_or_default(req.get("url"), UNKNOWN)),
        query=req.get("query"),
        headers=headers if isinstance(headers, dict) else {},
        context=str(_or_default(raw.get("context"), UNKNOWN)),
        message=str(_or_default(raw.get("message"), "")),
        auth_user_id=_as_int(raw.get("authUserId"), None, INT8_RANGE),
        remote_address=str(_or_default(req.get("remoteAddress"), UNKNOWN)),
        remote_port=_as_int(req.get("remotePort"), 0, INT4_RANGE),
        processing_time_ms=_as_float(raw.get("processingTimeMs"), None),
        params=params if isinstance(params, dict) else None,
        raw_data=raw,
    )
