"""
storage/db.py
=============
Shared psycopg2 connection pool.

The pool is created lazily on first use and retried with exponential
back-off, so the ingestor can start before Postgres has finished booting
(docker-compose health checks). `transaction()` hands out one pooled
connection for one unit of work: commit on success, rollback on any
exception, and the connection always goes back to the pool.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

import psycopg2
from psycopg2 import pool

from processing.retry import RetryPolicy, exponential_backoff

logger = logging.getLogger(__name__)

MIN_CONNECTIONS = 1
MAX_CONNECTIONS = 10

_pool: Optional[pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()


def _is_connection_error(exc: BaseException) -> bool:
    return isinstance(exc, psycopg2.OperationalError)


CONNECT_RETRY = RetryPolicy(
    max_attempts=10,
    delay=exponential_backoff(3.0, 30.0),
    retryable=_is_connection_error,
)


def get_pool(dsn: str, retry: RetryPolicy = CONNECT_RETRY) -> pool.ThreadedConnectionPool:
    """Return the process-wide pool, creating it on first call."""
    global _pool
    with _pool_lock:
        if _pool is not None:
            return _pool

        _pool = retry.call(
            lambda: pool.ThreadedConnectionPool(
                minconn=MIN_CONNECTIONS,
                maxconn=MAX_CONNECTIONS,
                dsn=dsn,
            ),
            description="Postgres connection",
        )
        logger.info(
            "Postgres connection pool created (min=%d, max=%d).",
            MIN_CONNECTIONS, MAX_CONNECTIONS,
        )
        return _pool


def close_pool() -> None:
    global _pool
    with _pool_lock:
        if _pool is not None:
            _pool.closeall()
            _pool = None
            logger.info("Postgres connection pool closed.")


@contextmanager
def transaction(conn_pool) -> Iterator["psycopg2.extensions.connection"]:
    """Borrow a connection for one transaction."""
    conn = conn_pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        # A dropped connection cannot roll back; keep the original error
        if not conn.closed:
            conn.rollback()
        raise
    finally:
        conn_pool.putconn(conn)
