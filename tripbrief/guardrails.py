"""Deterministic date guardrails: parsing, durations and date-range consistency."""

from __future__ import annotations

from datetime import date, datetime, timedelta
import re
from zoneinfo import ZoneInfo

import dateparser

from tripbrief.contracts import DateRangeValue


class DateGuardrailError(ValueError):
    """Raised when date parsing/validation fails."""


_WORD_NUMBERS = {
    "a": 1,
    "an": 1,
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
    "eleven": 11,
    "twelve": 12,
    "fourteen": 14,
    "twenty": 20,
}
_DURATION_RE = re.compile(
    r"\b(?P<count>\d{1,3}|a|an|one|two|three|four|five|six|seven|eight|nine|ten|eleven|twelve|fourteen|twenty)"
    r"[\s-]*(?P<unit>days?|nights?|weeks?)\b",
    re.IGNORECASE,
)
_FORTNIGHT_RE = re.compile(r"\b(a|one)\s+fortnight\b", re.IGNORECASE)


def _to_local_now(now_ts: datetime, timezone: str) -> datetime:
    tz = ZoneInfo(timezone)
    if now_ts.tzinfo is None:
        return now_ts.replace(tzinfo=tz)
    return now_ts.astimezone(tz)


def parse_date_expression(expression: str, now_ts: datetime, timezone: str) -> date:
    text = expression.strip()
    if not text:
        raise DateGuardrailError("Date expression cannot be empty.")

    normalized = " ".join(text.lower().split())
    local_now = _to_local_now(now_ts, timezone)

    if normalized in {"next weekend", "this weekend"}:
        return resolve_weekend_range(normalized, now_ts, timezone)[0]

    parsed = dateparser.parse(
        text,
        settings={
            "RELATIVE_BASE": local_now,
            "TIMEZONE": timezone,
            "TO_TIMEZONE": timezone,
            "RETURN_AS_TIMEZONE_AWARE": True,
            "PREFER_DAY_OF_MONTH": "first",
            "PREFER_DATES_FROM": "future",
        },
    )
    if parsed is None:
        raise DateGuardrailError(f"Could not parse date expression: '{expression}'.")

    return parsed.astimezone(ZoneInfo(timezone)).date()


def resolve_weekend_range(expression: str, now_ts: datetime, timezone: str) -> tuple[date, date]:
    normalized = " ".join(expression.lower().split())
    if normalized not in {"next weekend", "this weekend"}:
        raise DateGuardrailError(
            "Weekend resolver supports only 'this weekend' and 'next weekend'."
        )

    local_now = _to_local_now(now_ts, timezone)
    days_until_saturday = (5 - local_now.weekday()) % 7
    saturday = local_now.date() + timedelta(days=days_until_saturday)
    if normalized == "next weekend":
        saturday = saturday + timedelta(days=7)
    sunday = saturday + timedelta(days=1)
    return saturday, sunday


def parse_duration_days(text: str) -> int | None:
    """Return the trip length in days mentioned in `text`, if any.

    Nights and days are counted the same way: one planned night per trip day.
    """
    if _FORTNIGHT_RE.search(text):
        return 14
    match = _DURATION_RE.search(text)
    if not match:
        return None
    raw = match.group("count").lower()
    count = int(raw) if raw.isdigit() else _WORD_NUMBERS[raw]
    if count <= 0:
        return None
    unit = match.group("unit").lower()
    if unit.startswith("week"):
        return count * 7
    return count


def duration_span(text: str) -> tuple[int, int] | None:
    """Character span of the duration phrase, so callers can mask it out."""
    match = _FORTNIGHT_RE.search(text) or _DURATION_RE.search(text)
    if not match:
        return None
    return match.start(), match.end()


def validate_date_range(
    start_date: date,
    end_date: date,
    *,
    min_trip_days: int = 1,
    max_trip_days: int = 60,
) -> None:
    if min_trip_days <= 0:
        raise DateGuardrailError("min_trip_days must be > 0.")
    if max_trip_days < min_trip_days:
        raise DateGuardrailError("max_trip_days must be >= min_trip_days.")
    if end_date < start_date:
        raise DateGuardrailError(
            f"Invalid date range: end_date ({end_date.isoformat()}) is before "
            f"start_date ({start_date.isoformat()})."
        )

    trip_days = (end_date - start_date).days + 1
    if trip_days < min_trip_days:
        raise DateGuardrailError(
            f"Trip duration {trip_days} day(s) is below minimum {min_trip_days}."
        )
    if trip_days > max_trip_days:
        raise DateGuardrailError(
            f"Trip duration {trip_days} day(s) exceeds maximum {max_trip_days}."
        )


def reconcile_date_range(
    *,
    start: date | None = None,
    end: date | None = None,
    duration: int | None = None,
    previous: DateRangeValue | None = None,
    max_trip_days: int = 60,
) -> DateRangeValue:
    """Merge new date facts with an earlier value, keeping start/end/duration consistent.

    Facts from the current utterance win over `previous`; a new start date keeps the
    previous duration, a new duration keeps the previous start.
    """
    if start is None and end is None and duration is None:
        raise DateGuardrailError("No date information to reconcile.")

    if previous is not None:
        if start is None and end is None:
            start = previous.start
        elif start is not None and end is None and duration is None:
            duration = previous.duration
        if duration is None and not (start is not None and end is not None):
            duration = previous.duration

    if start is not None and end is None and duration is not None:
        end = start + timedelta(days=duration - 1)
    elif start is None and end is not None and duration is not None:
        start = end - timedelta(days=duration - 1)

    if start is not None and end is not None:
        validate_date_range(start, end, max_trip_days=max_trip_days)
        span = (end - start).days + 1
        if duration is not None and duration != span:
            duration = span
    elif duration is not None and duration > max_trip_days:
        raise DateGuardrailError(
            f"Trip duration {duration} day(s) exceeds maximum {max_trip_days}."
        )

    try:
        return DateRangeValue(start=start, end=end, duration=duration)
    except ValueError as exc:
        raise DateGuardrailError(str(exc)) from exc
