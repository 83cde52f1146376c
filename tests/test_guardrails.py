from __future__ import annotations

from datetime import date, datetime

import pytest

from tripbrief.contracts import DateRangeValue
from tripbrief.guardrails import (
    DateGuardrailError,
    duration_span,
    parse_date_expression,
    parse_duration_days,
    reconcile_date_range,
    resolve_weekend_range,
    validate_date_range,
)


# A Saturday.
FIXED_NOW_TS = datetime.fromisoformat("2026-10-17T09:00:00+00:00")
TIMEZONE = "Europe/Rome"


def test_next_weekend_resolves_from_fixed_now() -> None:
    start, end = resolve_weekend_range("next weekend", FIXED_NOW_TS, TIMEZONE)
    assert start == date(2026, 10, 24)
    assert end == date(2026, 10, 25)


def test_this_weekend_on_saturday_is_today() -> None:
    start, end = resolve_weekend_range("this weekend", FIXED_NOW_TS, TIMEZONE)
    assert start == date(2026, 10, 17)
    assert end == date(2026, 10, 18)


def test_parse_explicit_date_expression() -> None:
    assert parse_date_expression("2027-03-01", FIXED_NOW_TS, TIMEZONE) == date(2027, 3, 1)


def test_parse_empty_expression_raises() -> None:
    with pytest.raises(DateGuardrailError):
        parse_date_expression("   ", FIXED_NOW_TS, TIMEZONE)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("a week in Rome", 7),
        ("10 days", 10),
        ("five nights please", 5),
        ("a fortnight away", 14),
        ("two weeks", 14),
        ("no length here", None),
    ],
)
def test_parse_duration_days(text: str, expected: int | None) -> None:
    assert parse_duration_days(text) == expected


def test_duration_span_points_at_phrase() -> None:
    text = "Rome for 5 days"
    span = duration_span(text)
    assert span is not None
    assert text[span[0] : span[1]] == "5 days"


def test_invalid_range_raises() -> None:
    with pytest.raises(DateGuardrailError):
        validate_date_range(date(2026, 3, 10), date(2026, 3, 9))
    with pytest.raises(DateGuardrailError):
        validate_date_range(date(2026, 3, 1), date(2026, 6, 1), max_trip_days=30)


def test_reconcile_start_plus_duration_sets_end() -> None:
    value = reconcile_date_range(start=date(2027, 3, 1), duration=5)
    assert value.end == date(2027, 3, 5)
    assert value.duration == 5


def test_reconcile_keeps_previous_duration_for_new_start() -> None:
    previous = DateRangeValue(start=date(2027, 3, 1), end=date(2027, 3, 7))
    value = reconcile_date_range(start=date(2027, 4, 10), previous=previous)
    assert value.start == date(2027, 4, 10)
    assert value.end == date(2027, 4, 16)
    assert value.duration == 7


def test_reconcile_new_duration_keeps_previous_start() -> None:
    previous = DateRangeValue(start=date(2027, 3, 1), end=date(2027, 3, 7))
    value = reconcile_date_range(duration=3, previous=previous)
    assert value.start == date(2027, 3, 1)
    assert value.end == date(2027, 3, 3)


def test_reconcile_without_facts_raises() -> None:
    with pytest.raises(DateGuardrailError):
        reconcile_date_range()
