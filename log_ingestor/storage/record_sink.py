"""
storage/record_sink.py
======================
Append-only writer for normalized records (`logs`).

Each call to `write()` is one multi-row INSERT in one transaction
(`execute_values`), so a micro-batch of N records costs one round-trip
instead of N. If any row fails the whole micro-batch rolls back and the
error propagates; earlier micro-batches of the same file stay committed.

`ON CONFLICT (timestamp, id) DO NOTHING` keeps a re-processed file from
duplicating records whose id is stable (req.id or key#index).
"""

import logging
from typing import Sequence

from psycopg2.extras import Json, execute_values

from processing.normalizer import NormalizedRecord
from storage.db import transaction

logger = logging.getLogger(__name__)

INSERT_SQL = """
    INSERT INTO logs (
        id, timestamp, level, method, url,
        query, headers, context, message,
        auth_user_id, remote_address, remote_port,
        processing_time_ms, params, raw_data
    )
    VALUES %s
    ON CONFLICT (timestamp, id) DO NOTHING
"""

_JSON_COLUMNS = (5, 6, 13, 14)   # query, headers, params, raw_data


def _to_row(record: NormalizedRecord) -> tuple:
    row = list(record.as_row())
    for idx in _JSON_COLUMNS:
        if row[idx] is not None:
            row[idx] = Json(row[idx])
    return tuple(row)


class RecordSink:
    def __init__(self, conn_pool):
        self._pool = conn_pool

    def write(self, records: Sequence[NormalizedRecord]) -> int:
        if not records:
            return 0

        try:
            with transaction(self._pool) as conn:
                with conn.cursor() as cur:
                    execute_values(cur, INSERT_SQL, [_to_row(r) for r in records])
        except Exception:
            logger.exception("RecordSink.write failed; batch of %d rolled back.", len(records))
            raise
        logger.debug("RecordSink.write: %d rows committed.", len(records))
        return len(records)
