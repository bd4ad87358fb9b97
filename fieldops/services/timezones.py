"""
Timezone helpers.

Maps US ZIP codes and states onto IANA zone names (covering the states that
straddle two zones) and normalises datetimes to UTC.
"""
import re
from datetime import datetime, timezone
from typing import Optional

import pytz

from ..config import settings

DEFAULT_TIMEZONE = "America/New_York"

# ZIP prefixes for split-timezone states. Longest matching prefix wins.
ZIP_PREFIX_TIMEZONES = {
    # Idaho
    "83": "America/Boise",
    "832": "America/Los_Angeles",  # northern panhandle
    # Oregon
    "97": "America/Los_Angeles",
    "979": "America/Boise",  # Malheur County
    # Nevada
    "89": "America/Los_Angeles",
    "893": "America/Boise",  # West Wendover
    # Kansas
    "66": "America/Chicago",
    "678": "America/Denver",
    "679": "America/Denver",
    # Nebraska
    "68": "America/Chicago",
    "691": "America/Denver",
    # North Dakota
    "58": "America/Chicago",
    "586": "America/Denver",
    # South Dakota
    "57": "America/Chicago",
    "577": "America/Denver",
    # Texas
    "75": "America/Chicago",
    "76": "America/Chicago",
    "77": "America/Chicago",
    "78": "America/Chicago",
    "79": "America/Denver",  # El Paso
    # Florida
    "32": "America/New_York",
    "325": "America/Chicago",  # western panhandle
    # Indiana
    "46": "America/New_York",
    "47": "America/Chicago",
    # Kentucky
    "40": "America/New_York",
    "41": "America/New_York",
    "42": "America/Chicago",
    # Michigan
    "48": "America/New_York",
    "49": "America/New_York",
    "498": "America/Chicago",  # western Upper Peninsula
    # Tennessee
    "37": "America/New_York",
    "38": "America/Chicago",
    # Alaska
    "99": "America/Anchorage",
    "996": "America/Adak",  # Aleutians
}

STATE_TIMEZONES = {
    # Eastern
    "ME": "America/New_York", "NH": "America/New_York", "VT": "America/New_York",
    "MA": "America/New_York", "RI": "America/New_York", "CT": "America/New_York",
    "NY": "America/New_York", "NJ": "America/New_York", "PA": "America/New_York",
    "DE": "America/New_York", "MD": "America/New_York", "DC": "America/New_York",
    "VA": "America/New_York", "WV": "America/New_York", "NC": "America/New_York",
    "SC": "America/New_York", "GA": "America/New_York", "OH": "America/New_York",
    # Central
    "WI": "America/Chicago", "IL": "America/Chicago", "MN": "America/Chicago",
    "IA": "America/Chicago", "MO": "America/Chicago", "AR": "America/Chicago",
    "LA": "America/Chicago", "MS": "America/Chicago", "AL": "America/Chicago",
    "OK": "America/Chicago",
    # Mountain
    "MT": "America/Denver", "WY": "America/Denver", "CO": "America/Denver",
    "NM": "America/Denver", "UT": "America/Denver", "AZ": "America/Phoenix",
    # Pacific
    "WA": "America/Los_Angeles", "CA": "America/Los_Angeles",
    # Hawaii
    "HI": "Pacific/Honolulu",
}

# (low, high, tz) on the five-digit ZIP, used when no prefix or state matched
ZIP_RANGE_TIMEZONES = [
    (10001, 34999, "America/New_York"),
    (35001, 36999, "America/Chicago"),
    (38001, 39999, "America/Chicago"),
    (40001, 49999, "America/New_York"),
    (50001, 58999, "America/Chicago"),
    (59001, 59999, "America/Denver"),
    (60001, 79999, "America/Chicago"),
    (80001, 84999, "America/Denver"),
    (85001, 86999, "America/Phoenix"),
    (87001, 88999, "America/Denver"),
    (89001, 99999, "America/Los_Angeles"),
]

TIMEZONE_OPTIONS = [
    ("America/New_York", "Eastern Time (ET)"),
    ("America/Chicago", "Central Time (CT)"),
    ("America/Denver", "Mountain Time (MT)"),
    ("America/Los_Angeles", "Pacific Time (PT)"),
    ("America/Phoenix", "Arizona Time (AZ)"),
    ("America/Anchorage", "Alaska Time (AK)"),
    ("America/Adak", "Hawaii-Aleutian Time (HAT)"),
    ("Pacific/Honolulu", "Hawaii Time (HT)"),
]


def get_timezone_from_zip(zip_code: Optional[str], state: Optional[str] = None) -> str:
    """
    Resolve an IANA timezone for a US ZIP code.

    Args:
        zip_code: ZIP or ZIP+4, any formatting
        state: Optional two-letter state used when no ZIP prefix matches

    Returns:
        IANA timezone name, America/New_York when nothing matches
    """
    if not zip_code:
        return DEFAULT_TIMEZONE

    clean = re.sub(r"[^0-9]", "", zip_code)[:5]
    if not clean:
        return DEFAULT_TIMEZONE

    for length in (3, 2):
        tz = ZIP_PREFIX_TIMEZONES.get(clean[:length])
        if tz and len(clean) >= length:
            return tz

    if state:
        return STATE_TIMEZONES.get(state.strip().upper(), DEFAULT_TIMEZONE)

    if len(clean) == 5:
        zip_num = int(clean)
        for low, high, tz in ZIP_RANGE_TIMEZONES:
            if low <= zip_num <= high:
                return tz

    return DEFAULT_TIMEZONE


def is_valid_timezone(name: Optional[str]) -> bool:
    if not name:
        return False
    return name in pytz.all_timezones_set


def format_timezone_label(name: str) -> str:
    for value, label in TIMEZONE_OPTIONS:
        if value == name:
            return label
    return name


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_now(tz_name: Optional[str] = None) -> datetime:
    """Current wall-clock time in tz_name; unknown zones fall back to the configured default."""
    name = tz_name if is_valid_timezone(tz_name) else settings.tz_default
    return datetime.now(pytz.timezone(name))
