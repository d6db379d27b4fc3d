"""Temporal Parsing Service.

Converts the date/time shapes found in historical workbooks into a single
timezone-aware UTC instant:

    - native values (datetime, date, pandas Timestamp)
    - spreadsheet serial numbers (days since 1899-12-30, fraction = time of day)
    - locale strings, tried against a fixed fallback chain of formats

Naive values are wall-clock times in the source time zone and are localized
before conversion to UTC. Failures are reported as ``ok=False`` and must be
treated as "unknown", never as the epoch.

Also provides the small cell helpers used by the ingest pass
(``parse_float``, ``parse_int``, ``parse_yes_no``).
"""

import logging
import math
import re
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

import pandas as pd

logger = logging.getLogger(__name__)

SPREADSHEET_EPOCH = datetime(1899, 12, 30)
MIN_YEAR = 1900
MAX_YEAR = 2100

# Day-first formats come before the US format: the historical workbooks are day-first.
DATE_FORMATS = (
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%d/%m/%Y",
    "%d/%m/%y %H:%M",
    "%d/%m/%y",
    "%d-%m-%Y %H:%M",
    "%d-%m-%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
    "%m/%d/%Y %H:%M:%S",
)

_NUMERIC = re.compile(r"^\s*-?\d+(\.\d+)?\s*$")

_YES = {"SI", "SÍ", "S", "YES", "Y", "TRUE", "1", "X"}
_NO = {"NO", "N", "FALSE", "0"}

TimezoneLike = Union[str, tzinfo, None]


def _resolve_tz(tz: TimezoneLike) -> tzinfo:
    if tz is None:
        return timezone.utc
    if isinstance(tz, str):
        return ZoneInfo(tz)
    return tz


def _finish(value: datetime, tz: tzinfo) -> tuple[Optional[datetime], bool]:
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz)
    value = value.astimezone(timezone.utc)
    if not MIN_YEAR <= value.year <= MAX_YEAR:
        return None, False
    return value, True


def from_serial(value: float, tz: TimezoneLike = None) -> tuple[Optional[datetime], bool]:
    """Convert a spreadsheet serial day-count into an instant.

    ``floor(value)`` is the day offset from the epoch and the fractional part
    is the time of day, rounded to the nearest second. Serials below 1 are
    time-of-day only and are rejected.
    """
    if math.isnan(value) or math.isinf(value) or value < 1:
        return None, False
    days = math.floor(value)
    seconds = round((value - days) * 86400)
    try:
        naive = SPREADSHEET_EPOCH + timedelta(days=days, seconds=seconds)
    except OverflowError:
        return None, False
    return _finish(naive, _resolve_tz(tz))


def parse_timestamp(raw: Any, tz: TimezoneLike = None) -> tuple[Optional[datetime], bool]:
    """Parse a raw cell into a UTC instant.

    Parameters:
        raw: Cell value of any shape
        tz: Time zone of naive values (name, tzinfo, or None for UTC)

    Returns:
        tuple: (instant, ok). ``instant`` is None when ``ok`` is False.
    """
    if raw is None or raw is pd.NaT or isinstance(raw, bool):
        return None, False

    zone = _resolve_tz(tz)

    if isinstance(raw, pd.Timestamp):
        if pd.isna(raw):
            return None, False
        return _finish(raw.to_pydatetime(), zone)

    if isinstance(raw, datetime):
        return _finish(raw, zone)

    if isinstance(raw, date):
        return _finish(datetime.combine(raw, time()), zone)

    if isinstance(raw, (int, float)):
        return from_serial(float(raw), zone)

    if not isinstance(raw, str):
        # numpy scalars and other number-likes
        try:
            return from_serial(float(raw), zone)
        except (TypeError, ValueError):
            return None, False

    text = raw.strip()
    if not text:
        return None, False

    if _NUMERIC.match(text):
        return from_serial(float(text), zone)

    for fmt in DATE_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return _finish(parsed, zone)

    try:
        return _finish(datetime.fromisoformat(text), zone)
    except ValueError:
        logger.debug(f"Unparseable timestamp value: {text!r}")
        return None, False


def calendar_date(instant: datetime, tz: TimezoneLike = None) -> date:
    """Calendar date of an instant as seen in ``tz``."""
    return instant.astimezone(_resolve_tz(tz)).date()


def minutes_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60


def parse_float(raw: Any) -> Optional[float]:
    """Parse a numeric cell; blanks and junk become None.

    Accepts a decimal comma (``"36,5"``).
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = str(raw).strip().replace(",", ".")
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def parse_int(raw: Any) -> Optional[int]:
    value = parse_float(raw)
    return None if value is None else math.floor(value)


def parse_yes_no(raw: Any) -> Optional[bool]:
    """Map SI/NO style cells to booleans; anything else is unknown."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        if raw != raw:
            return None
        return bool(raw)
    text = str(raw).strip().upper()
    if text in _YES:
        return True
    if text in _NO:
        return False
    return None
