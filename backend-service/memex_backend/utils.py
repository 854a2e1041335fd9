from __future__ import annotations

from datetime import date, datetime, time, timedelta

UNTITLED = "Untitled"


def clamp_limit(value: object, *, default: int, maximum: int) -> int:
    try:
        limit = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return default
    return max(1, min(maximum, limit))


def clamp_offset(value: object) -> int:
    try:
        offset = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, offset)


def display_title(title: str | None) -> str:
    if title and title.strip():
        return title
    return UNTITLED


def local_day_start_ms(day: date) -> int:
    return int(datetime.combine(day, time.min).timestamp() * 1000)


def local_day_end_ms(day: date) -> int:
    return local_day_start_ms(day + timedelta(days=1)) - 1


def parse_day_or_millis(value: str | None, *, end_of_day: bool = False) -> int | None:
    """Accept ``YYYY-MM-DD`` (local calendar day) or epoch milliseconds."""
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if cleaned.lstrip("-").isdigit():
        return int(cleaned)
    try:
        day = date.fromisoformat(cleaned)
    except ValueError as exc:
        raise ValueError(f"Invalid date: {value!r}; expected YYYY-MM-DD or epoch milliseconds") from exc
    return local_day_end_ms(day) if end_of_day else local_day_start_ms(day)


def count_occurrences(haystack: str | None, needle: str | None) -> int:
    if not haystack or not needle:
        return 0
    return haystack.casefold().count(needle.casefold())


def title_sort_key(title: str | None) -> str:
    return display_title(title).casefold()
