from datetime import datetime, timezone

import pytest

from app.core.timeutil import epoch_ms, from_epoch_ms, parse_timestamp, to_iso


@pytest.mark.parametrize("raw, microsecond", [
    ("2026-03-02T12:00:00.12345+00:00", 123450),
    ("2026-03-02T12:00:00.1+00:00", 100000),
    ("2026-03-02T12:00:00+00:00", 0),
    ("2026-03-02T12:00:00.123456Z", 123456),
])
def test_parses_postgrest_timestamps(raw, microsecond):
    parsed = parse_timestamp(raw)
    assert parsed == datetime(2026, 3, 2, 12, 0, 0, microsecond, tzinfo=timezone.utc)


def test_naive_values_are_utc():
    assert parse_timestamp("2026-03-02T12:00:00").tzinfo == timezone.utc


def test_epoch_ms_round_trips_through_iso():
    value = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)
    assert from_epoch_ms(epoch_ms(value)) == value
    assert parse_timestamp(to_iso(value)) == value
