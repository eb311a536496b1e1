from datetime import datetime, timezone

import pytest

from ingestion.key_filter import extract_key_timestamp, filter_newer_than

UTC = timezone.utc


@pytest.mark.parametrize("key, expected", [
    ("2024-01-02T00:00:00.000Z.json.gz", datetime(2024, 1, 2, tzinfo=UTC)),
    ("logs/api/2024-01-02T10:30:00Z.json.gz", datetime(2024, 1, 2, 10, 30, tzinfo=UTC)),
    ("2024-01-02T10:30:00+02:00.json.gz", datetime(2024, 1, 2, 8, 30, tzinfo=UTC)),
    ("2024-01-02T10:30:00.json", datetime(2024, 1, 2, 10, 30, tzinfo=UTC)),
])
def test_extracts_timestamp_from_basename(key, expected):
    assert extract_key_timestamp(key) == expected


@pytest.mark.parametrize("key", ["export.json.gz", ".json.gz", "2024-13-45.json.gz", "dir/"])
def test_unparseable_names_give_none(key):
    assert extract_key_timestamp(key) is None


def test_no_watermark_keeps_everything():
    keys = ["b.json.gz", "2024-01-01T00:00:00Z.json.gz"]
    assert filter_newer_than(keys, None) == keys


def test_keeps_strictly_newer_in_order():
    watermark = datetime(2024, 1, 2, tzinfo=UTC)
    keys = [
        "2024-01-03T00:00:00Z.json.gz",
        "2024-01-02T00:00:00Z.json.gz",
        "2024-01-01T00:00:00Z.json.gz",
        "2024-01-02T00:00:01Z.json.gz",
    ]
    assert filter_newer_than(keys, watermark) == [
        "2024-01-03T00:00:00Z.json.gz",
        "2024-01-02T00:00:01Z.json.gz",
    ]


def test_unparseable_keys_are_included():
    watermark = datetime(2024, 1, 2, tzinfo=UTC)
    assert filter_newer_than(["manual-upload.json.gz"], watermark) == ["manual-upload.json.gz"]


def test_naive_watermark_is_utc():
    watermark = datetime(2024, 1, 2)
    assert filter_newer_than(["2024-01-03T00:00:00Z.json.gz"], watermark) == [
        "2024-01-03T00:00:00Z.json.gz"
    ]
