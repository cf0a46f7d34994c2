from datetime import datetime

import pytest

from citybrief.utils.date_extraction import event_sort_key, parse_event_date


REFERENCE = datetime(2025, 7, 20, 9, 0)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Thu, Jul 31, 8:00 PM", datetime(2025, 7, 31, 20, 0)),
        ("Sun, Aug 17, 3 – 5 PM", datetime(2025, 8, 17, 15, 0)),
        ("Sat, Aug 2, 10 AM – 2 PM", datetime(2025, 8, 2, 10, 0)),
        ("Mon, Jul 28 – Sat, Aug 2", datetime(2025, 7, 28, 0, 0)),
        ("Jul 31", datetime(2025, 7, 31, 0, 0)),
        ("Thu, Jul 31", datetime(2025, 7, 31, 0, 0)),
        ("September 5", datetime(2025, 9, 5, 0, 0)),
        ("2025-08-01T19:00:00", datetime(2025, 8, 1, 19, 0)),
        ("Fri, Aug 1, 12:30 AM", datetime(2025, 8, 1, 0, 30)),
        ("August 2", datetime(2025, 8, 2, 0, 0)),
        ("October 12, 7:30 PM", datetime(2025, 10, 12, 19, 30)),
        ("December 24", datetime(2025, 12, 24, 0, 0)),
        ("Sept 5", datetime(2025, 9, 5, 0, 0)),
        ("Wednesday, August 6", datetime(2025, 8, 6, 0, 0)),
        ("January 3", datetime(2026, 1, 3, 0, 0)),
    ],
)
def test_parse_event_date_pattern_families(text, expected):
    assert parse_event_date(text, reference=REFERENCE) == expected


@pytest.mark.parametrize("text", ["", "   ", None, "Date TBA", "Every weekend"])
def test_parse_event_date_returns_none_when_nothing_matches(text):
    assert parse_event_date(text, reference=REFERENCE) is None


def test_dates_well_behind_reference_roll_into_next_year():
    reference = datetime(2025, 12, 1)
    assert parse_event_date("Jan 5", reference=reference) == datetime(2026, 1, 5)
    # Recent past stays in the reference year
    assert parse_event_date("Nov 20", reference=reference) == datetime(2025, 11, 20)


def test_invalid_calendar_day_is_unparseable():
    assert parse_event_date("Feb 30", reference=REFERENCE) is None


def test_sort_key_puts_unparseable_dates_last():
    parsed = [None, datetime(2025, 8, 2), datetime(2025, 7, 30), None]
    ordered = sorted(parsed, key=event_sort_key)
    assert ordered[:2] == [datetime(2025, 7, 30), datetime(2025, 8, 2)]
    assert ordered[2:] == [None, None]


def test_leading_words_do_not_hide_a_later_date():
    assert parse_event_date("Doors 7, show Aug 9", reference=REFERENCE) == datetime(2025, 8, 9)


def test_full_month_names_sort_by_date():
    texts = ["December 24", "August 2", "Date TBA", "September 5"]
    ordered = sorted(texts, key=lambda t: event_sort_key(parse_event_date(t, reference=REFERENCE)))
    assert ordered == ["August 2", "September 5", "December 24", "Date TBA"]
