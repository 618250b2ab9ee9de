from __future__ import annotations

from datetime import date, datetime, timedelta

from .errors import InvalidRangeError


def normalize(value: date | datetime | str) -> date:
    """Day granularity: drop time-of-day, accept ISO strings."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise InvalidRangeError(f"Invalid date: {value!r}")


def stay_nights(check_in: date | datetime | str, check_out: date | datetime | str) -> list[date]:
    """
    Nights occupied by a stay: [check_in, check_out).

    The check-out day itself is not a night (the guest leaves that morning).
    Booking, availability checks and release all expand ranges through here.
    """
    start = normalize(check_in)
    end = normalize(check_out)
    if end <= start:
        raise InvalidRangeError("Check-out date must be after check-in date")
    return [start + timedelta(days=i) for i in range((end - start).days)]


def calendar_days(start: date | datetime | str, end: date | datetime | str) -> list[date]:
    """Inclusive calendar range [start, end], used by owner-facing views."""
    first = normalize(start)
    last = normalize(end)
    if last < first:
        raise InvalidRangeError("End date must not be before start date")
    return [first + timedelta(days=i) for i in range((last - first).days + 1)]
