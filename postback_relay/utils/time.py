"""Time utilities (UTC now, day bounds, local formatting)."""
from __future__ import annotations
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def day_bounds(date_from: date, date_to: date, tz_name: str | None = None) -> tuple[datetime, datetime]:
    """Inclusive bounds of whole days date_from..date_to in ``tz_name`` (UTC when unset), returned in UTC."""
    tz = ZoneInfo(tz_name) if tz_name else timezone.utc
    start = datetime.combine(date_from, time.min, tzinfo=tz)
    end = datetime.combine(date_to, time.max, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def format_local(value: datetime, tz_name: str) -> str:
    return ensure_aware(value).astimezone(ZoneInfo(tz_name)).strftime("%d.%m.%Y %H:%M:%S")


__all__ = ["utc_now", "ensure_aware", "day_bounds", "format_local"]
