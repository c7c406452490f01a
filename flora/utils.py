from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Union


def iso_today() -> str:
    return date.today().isoformat()


def iso_now() -> str:
    # Use UTC ISO timestamps for consistency.
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def to_iso(value: Union[date, datetime, str, None]) -> Optional[str]:
    """Normalize a date/datetime bound to the ISO form stored in created_at."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    return datetime.combine(value, time.min, tzinfo=timezone.utc).isoformat()


def day_range(start: date, end: date) -> tuple[str, str]:
    """Half-open [start, end + 1 day) bounds covering both calendar days."""
    return to_iso(start), to_iso(end + timedelta(days=1))


def money(v: float) -> float:
    return round(float(v), 2)


def safe_div(n: float, d: float) -> float:
    return float(n) / float(d) if d else 0.0
