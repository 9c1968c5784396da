from datetime import datetime, timedelta, timezone

import pytest

from punchclock.errors import ValidationError
from punchclock.utils import date_range_utc, default_data_dir, format_duration, parse_duration, parse_timestamp

def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(3) == "3s"
    assert format_duration(61) == "1m 01s"
    assert format_duration(3661) == "1h 01m 01s"
    assert format_duration(-5) == "0s"

def test_parse_duration():
    assert parse_duration("2h") == 7200
    assert parse_duration("30m") == 1800
    assert parse_duration("1d") == 86400
    assert parse_duration("2.5h") == 9000
    assert parse_duration("1h 30m") == 5400

@pytest.mark.parametrize("text", ["", "abc", "2x", "h", "0h"])
def test_parse_duration_rejects(text):
    with pytest.raises(ValidationError):
        parse_duration(text)

def test_parse_timestamp_iso_with_offset():
    ts = parse_timestamp("2024-03-01T10:00:00+02:00")
    assert ts == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

def test_parse_timestamp_clock_time_is_today_local():
    now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
    ts = parse_timestamp("09:30", now)
    local = ts.astimezone()
    assert (local.hour, local.minute) == (9, 30)
    assert local.date() == now.astimezone().date()
    assert ts.tzinfo == timezone.utc

@pytest.mark.parametrize("text", ["yesterday", "25:00", "2024-13-01"])
def test_parse_timestamp_rejects(text):
    with pytest.raises(ValidationError):
        parse_timestamp(text)

def test_date_range_is_inclusive_of_to_day():
    start, end = date_range_utc("2024-03-01", "2024-03-01")
    assert end - start == timedelta(days=1)
    assert date_range_utc(None, None) == (None, None)

def test_date_range_rejects_reversed():
    with pytest.raises(ValidationError):
        date_range_utc("2024-03-02", "2024-03-01")

def test_data_dir_override(monkeypatch, tmp_path):
    monkeypatch.setenv("PUNCHCLOCK_HOME", str(tmp_path))
    assert default_data_dir() == tmp_path
