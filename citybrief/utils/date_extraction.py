"""
Date parsing for event listings.

Event providers return human-readable date strings in inconsistent formats.
``parse_event_date`` tries an explicit, ordered list of pattern families and
returns ``None`` when none match; callers sort unparseable dates last.

Supported families:
- "Thu, Jul 31, 8:00 PM"          single date with time
- "Sun, Aug 17, 3 – 5 PM"         time range on one day (start time kept)
- "Mon, Jul 28 – Sat, Aug 2"      multi-day range (start date kept)
- "Jul 31" / "Thu, Jul 31"        bare date
- "September 5" / "Sept 5"         full or abbreviated month names
- "2025-07-31T20:00:00"           ISO 8601 (Eventbrite local start)
"""

import re
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from dateutil.parser import isoparse

logger = logging.getLogger(__name__)

MONTH_NAMES = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)

# Listings show upcoming events; a date this far behind the reference belongs to next year
ROLLOVER_WINDOW = timedelta(days=60)

_DASH = r"\s*[–—-]\s*"
_WEEKDAY = r"(?:(?:mon|tue|wed|thu|fri|sat|sun)[a-z]*\.?,?\s+)?"
_MONTH = r"([A-Za-z]{3,9})\.?"

SINGLE_WITH_TIME = re.compile(
    _WEEKDAY + _MONTH + r"\s+(\d{1,2}),?\s+(\d{1,2}):(\d{2})\s*(AM|PM)",
    re.IGNORECASE,
)
TIME_RANGE = re.compile(
    _WEEKDAY + _MONTH + r"\s+(\d{1,2}),?\s+(\d{1,2})(?::(\d{2}))?\s*(AM|PM)?"
    + _DASH + r"\d{1,2}(?::\d{2})?\s*(AM|PM)",
    re.IGNORECASE,
)
DATE_RANGE = re.compile(
    _WEEKDAY + _MONTH + r"\s+(\d{1,2})" + _DASH + _WEEKDAY + r"[A-Za-z]{3,9}\.?\s+\d{1,2}",
    re.IGNORECASE,
)
BARE_DATE = re.compile(
    _WEEKDAY + _MONTH + r"\s+(\d{1,2})\b",
    re.IGNORECASE,
)
ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def _month_number(token: str) -> Optional[int]:
    """Month for "Sep", "Sept" or "September"; None for any other word."""
    token = token.lower()
    if len(token) < 3:
        return None
    for number, name in enumerate(MONTH_NAMES, start=1):
        if name.startswith(token):
            return number
    return None


def _to_24h(hour: int, meridiem: Optional[str]) -> int:
    if not meridiem:
        return hour
    meridiem = meridiem.upper()
    if meridiem == "PM" and hour != 12:
        return hour + 12
    if meridiem == "AM" and hour == 12:
        return 0
    return hour


def _build(month_token: str, day: str, hour: int, minute: int, reference: datetime) -> Optional[datetime]:
    month = _month_number(month_token)
    if month is None:
        return None
    try:
        candidate = datetime(reference.year, month, int(day), hour, minute)
    except ValueError:
        return None

    # Listings never carry a year
    if candidate < reference.replace(tzinfo=None) - ROLLOVER_WINDOW:
        try:
            candidate = candidate.replace(year=reference.year + 1)
        except ValueError:
            return None
    return candidate


def _first_built(pattern: re.Pattern, text: str, build: Callable) -> Optional[datetime]:
    # A word like "Doors 7" can match before the real date further along
    for match in pattern.finditer(text):
        parsed = build(*match.groups())
        if parsed is not None:
            return parsed
    return None


def _parse_single_with_time(text: str, reference: datetime) -> Optional[datetime]:
    def build(month, day, hour, minute, meridiem):
        return _build(month, day, _to_24h(int(hour), meridiem), int(minute), reference)
    return _first_built(SINGLE_WITH_TIME, text, build)


def _parse_time_range(text: str, reference: datetime) -> Optional[datetime]:
    def build(month, day, hour, minute, start_meridiem, end_meridiem):
        # "3 – 5 PM": the start borrows the end's meridiem
        meridiem = start_meridiem or end_meridiem
        return _build(month, day, _to_24h(int(hour), meridiem), int(minute or 0), reference)
    return _first_built(TIME_RANGE, text, build)


def _parse_date_range(text: str, reference: datetime) -> Optional[datetime]:
    return _first_built(DATE_RANGE, text, lambda month, day: _build(month, day, 0, 0, reference))


def _parse_bare_date(text: str, reference: datetime) -> Optional[datetime]:
    return _first_built(BARE_DATE, text, lambda month, day: _build(month, day, 0, 0, reference))


def _parse_iso(text: str, reference: datetime) -> Optional[datetime]:
    if not ISO_DATE.match(text):
        return None
    try:
        return isoparse(text).replace(tzinfo=None)
    except ValueError:
        return None


PATTERN_FAMILIES: List[Tuple[str, Callable[[str, datetime], Optional[datetime]]]] = [
    ("iso", _parse_iso),
    ("single_with_time", _parse_single_with_time),
    ("time_range", _parse_time_range),
    ("date_range", _parse_date_range),
    ("bare_date", _parse_bare_date),
]


def parse_event_date(text: Optional[str], reference: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse an event date string into a naive local datetime.

    Args:
        text: Date text as shown by the provider
        reference: "Now" used to infer the missing year (defaults to datetime.now())

    Returns:
        datetime if one of the pattern families matched, None otherwise
    """
    if not text or not text.strip():
        return None

    reference = reference or datetime.now()
    text = text.strip()

    for name, parser in PATTERN_FAMILIES:
        parsed = parser(text, reference)
        if parsed is not None:
            logger.debug(f"Parsed event date '{text}' via {name}: {parsed.isoformat()}")
            return parsed

    logger.debug(f"Unparseable event date: '{text}'")
    return None


def event_sort_key(parsed: Optional[datetime]) -> Tuple[int, datetime]:
    """Sort key that places unparseable dates after every parsed one."""
    if parsed is None:
        return (1, datetime.max)
    return (0, parsed)
