from __future__ import annotations

from datetime import UTC, datetime, timedelta, timezone

import pytest

from rsvpcore.utils import (
    isoformat_or_none,
    parse_iso_datetime,
    to_naive_utc,
    utcnow,
)


def test_utcnow_is_naive():
    assert utcnow().tzinfo is None


def test_to_naive_utc_converts_offsets():
    aware = datetime(2030, 1, 1, 14, 30, tzinfo=timezone(timedelta(hours=2)))
    assert to_naive_utc(aware) == datetime(2030, 1, 1, 12, 30)
    naive = datetime(2030, 1, 1, 12, 30)
    assert to_naive_utc(naive) is naive
    assert to_naive_utc(None) is None


@pytest.mark.parametrize(
    "raw",
    [
        "2030-01-01T12:30:00",
        "2030-01-01T12:30:00Z",
        "2030-01-01T12:30:00+00:00",
        "2030-01-01T07:30:00-05:00",
        " 2030-01-01T12:30:00z ",
    ],
)
def test_parse_iso_datetime_normalizes_to_utc(raw):
    assert parse_iso_datetime(raw) == datetime(2030, 1, 1, 12, 30)


def test_parse_iso_datetime_blank_and_invalid():
    assert parse_iso_datetime(None) is None
    assert parse_iso_datetime("   ") is None
    assert parse_iso_datetime(datetime(2030, 1, 1, tzinfo=UTC)) == datetime(2030, 1, 1)
    with pytest.raises(ValueError):
        parse_iso_datetime("next tuesday")


def test_isoformat_or_none():
    assert isoformat_or_none(datetime(2030, 1, 1, 9, 5)) == "2030-01-01T09:05:00"
    assert isoformat_or_none(None) is None
