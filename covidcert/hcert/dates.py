# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Date parsing and DST-safe offset arithmetic for validity windows.

Certificates carry two kinds of temporal values:

* **Calendar dates** (``yyyy-MM-dd``) for vaccination and first positive
  test.  These are interpreted as local midnight in the evaluation time
  zone, and day offsets are added on the calendar, so "+15 days" always
  lands on local midnight even across a DST transition.
* **Timestamps** (ISO-8601, with or without fractional seconds) for test
  sample collection.  Hour offsets are added on the absolute timeline,
  so "+72 hours" is exactly 72 elapsed hours.

The two are deliberately not interchangeable: across a DST change a
"3 days" offset and a "72 hours" offset differ by one hour.

Unparseable input yields ``None``; callers degrade the affected bound
rather than raising.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from covidcert.config import EVALUATION_TIMEZONE

logger = logging.getLogger("hcert.dates")

__all__ = [
    "DATE_FORMAT",
    "evaluation_timezone",
    "parse_date",
    "parse_iso8601",
    "add_days",
    "add_hours",
]

DATE_FORMAT = "%Y-%m-%d"

# Tried in order: without fractional seconds first.
_ISO8601_FORMATS = (
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
)


def evaluation_timezone(name: Optional[str] = None) -> tzinfo:
    """Return the configured evaluation time zone (UTC if unknown)."""
    key = name or EVALUATION_TIMEZONE
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown evaluation time zone %r; using UTC", key)
        return timezone.utc


def parse_date(value: Optional[str], tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Parse a ``yyyy-MM-dd`` date as local midnight in *tz*."""
    if not value:
        return None
    try:
        day = datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError:
        logger.debug("Unparseable calendar date %r", value)
        return None
    return _local_midnight(day, tz or evaluation_timezone())


def parse_iso8601(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp carrying a UTC offset.

    Accepts both ``2021-09-01T10:00:00Z`` and
    ``2021-09-01T10:00:00.123Z``; timestamps without an offset are
    rejected.
    """
    if not value:
        return None
    text = value.strip()
    for fmt in _ISO8601_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    logger.debug("Unparseable ISO-8601 timestamp %r", value)
    return None


def add_days(start: datetime, days: int, tz: Optional[tzinfo] = None) -> datetime:
    """Add calendar days, keeping the local wall-clock time in *tz*."""
    zone = tz or evaluation_timezone()
    local = start.astimezone(zone)
    return datetime.combine(local.date() + timedelta(days=days), local.time(), tzinfo=zone)


def add_hours(start: datetime, hours: int) -> datetime:
    """Add elapsed hours on the absolute timeline."""
    shifted = start.astimezone(timezone.utc) + timedelta(hours=hours)
    return shifted.astimezone(start.tzinfo)


def _local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(0, 0), tzinfo=tz)
