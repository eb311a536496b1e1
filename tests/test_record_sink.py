from unittest.mock import MagicMock

import psycopg2
import pytest
from psycopg2.extras import Json

from conftest import make_record
from processing.normalizer import normalize_record
from storage import record_sink as record_sink_module
from storage.record_sink import RecordSink


@pytest.fixture
def conn_pool():
    pool = MagicMock()
    pool.getconn.return_value.closed = 0
    return pool


@pytest.fixture
def captured(monkeypatch):
    calls = []

    def fake_execute_values(cur, sql, rows):
        calls.append((sql, rows))

    monkeypatch.setattr(record_sink_module, "execute_values", fake_execute_values)
    return calls


def test_empty_batch_does_no_io(conn_pool):
    assert RecordSink(conn_pool).write([]) == 0
    conn_pool.getconn.assert_not_called()


def test_writes_one_statement_per_batch(conn_pool, captured):
    records = [normalize_record(make_record(), fallback_id=f"k#{i}") for i in range(3)]

    assert RecordSink(conn_pool).write(records) == 3

    (sql, rows), = captured
    assert "ON CONFLICT (timestamp, id) DO NOTHING" in sql
    assert [r[0] for r in rows] == ["k#0", "k#1", "k#2"]
    conn_pool.getconn.return_value.commit.assert_called_once()
    conn_pool.putconn.assert_called_once()


def test_json_columns_are_wrapped(conn_pool, captured):
    record = normalize_record(make_record())

    RecordSink(conn_pool).write([record])

    row = captured[0][1][0]
    assert isinstance(row[5], Json)     # query
    assert isinstance(row[6], Json)     # headers
    assert row[13] is None              # params absent
    assert isinstance(row[14], Json)    # raw_data


def test_failure_rolls_back_and_propagates(conn_pool, monkeypatch):
    def boom(cur, sql, rows):
        raise RuntimeError("disk full")

    monkeypatch.setattr(record_sink_module, "execute_values", boom)

    with pytest.raises(RuntimeError, match="disk full"):
        RecordSink(conn_pool).write([normalize_record(make_record())])

    conn = conn_pool.getconn.return_value
    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    conn_pool.putconn.assert_called_once_with(conn)


def test_dropped_connection_keeps_original_error(conn_pool, monkeypatch):
    conn = conn_pool.getconn.return_value
    conn.rollback.side_effect = psycopg2.InterfaceError("connection already closed")

    def server_gone(cur, sql, rows):
        conn.closed = 2
        raise psycopg2.OperationalError("server closed the connection unexpectedly")

    monkeypatch.setattr(record_sink_module, "execute_values", server_gone)

    with pytest.raises(psycopg2.OperationalError, match="server closed"):
        RecordSink(conn_pool).write([normalize_record(make_record())])
    conn.rollback.assert_not_called()
    conn_pool.putconn.assert_called_once_with(conn)
