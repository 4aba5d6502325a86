from __future__ import annotations

from datetime import date, datetime, time, timedelta


def normalize_text(value: str | None) -> str:
    return (value or "").strip()


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD (HTML <input type="date">)."""
    s = normalize_text(s)
    if not s:
        return None
    return date.fromisoformat(s)


def parse_int(s: str | int | None) -> int | None:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    s = s.strip()
    if not s:
        return None
    return int(s)


def day_bounds(start: date | None, end: date | None) -> tuple[datetime | None, datetime | None]:
    """Inclusive day range -> [start 00:00, day after end 00:00)."""
    lo = datetime.combine(start, time.min) if start else None
    hi = datetime.combine(end + timedelta(days=1), time.min) if end else None
    return lo, hi
