from datetime import datetime, timezone

import pytest

from fieldops.services.timezones import (
    as_utc,
    format_timezone_label,
    get_timezone_from_zip,
    is_valid_timezone,
    local_now,
)


@pytest.mark.parametrize("zip_code,state,expected", [
    ("83702", None, "America/Boise"),
    ("83201", None, "America/Los_Angeles"),
    ("97914", None, "America/Boise"),
    ("79901", None, "America/Denver"),
    ("32501-1234", None, "America/Chicago"),
    ("99501", None, "America/Anchorage"),
    ("99603", None, "America/Adak"),
    ("96813", "HI", "Pacific/Honolulu"),
    ("85001", None, "America/Phoenix"),
    ("10001", None, "America/New_York"),
    ("60601", None, "America/Chicago"),
])
def test_zip_lookup(zip_code, state, expected):
    assert get_timezone_from_zip(zip_code, state) == expected


def test_missing_or_garbage_zip_defaults_to_eastern():
    assert get_timezone_from_zip(None) == "America/New_York"
    assert get_timezone_from_zip("abc") == "America/New_York"
    assert get_timezone_from_zip("00501") == "America/New_York"


def test_timezone_helpers():
    assert is_valid_timezone("America/Chicago")
    assert not is_valid_timezone("Mars/Olympus")
    assert not is_valid_timezone(None)
    assert format_timezone_label("America/Denver") == "Mountain Time (MT)"
    assert format_timezone_label("Europe/Paris") == "Europe/Paris"


def test_as_utc_treats_naive_as_utc():
    naive = datetime(2026, 1, 1, 12, 0)
    assert as_utc(naive) == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert as_utc(None) is None


def test_local_now_uses_zone_and_falls_back():
    assert local_now("America/Chicago").tzinfo.zone == "America/Chicago"
    assert local_now("Mars/Olympus").tzinfo.zone == "America/New_York"
    assert local_now(None).tzinfo is not None
