from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    # Fixed width so stored values sort lexically in time order.
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        cleaned = value.strip()
        if not cleaned:
            return None
        parsed = datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def parse_date_bound(value: str | None, *, end_of_day: bool = False) -> datetime | None:
    """Parse a query-string date or datetime into an aware UTC datetime.

    A bare ``YYYY-MM-DD`` becomes the start of that day, or its last
    microsecond when ``end_of_day`` is set, so inclusive ranges cover the
    whole day. Raises ``ValueError`` on malformed input.
    """
    if value is None or not value.strip():
        return None
    cleaned = value.strip()
    if len(cleaned) == 10:
        day = date.fromisoformat(cleaned)
        bound = time.max if end_of_day else time.min
        return datetime.combine(day, bound, tzinfo=UTC)
    return parse_iso(cleaned)


def duration_seconds(start: datetime, end: datetime) -> float:
    return (end - start) / timedelta(seconds=1)
