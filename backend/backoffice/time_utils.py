from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC timestamp used for created_at / occurred_at columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today() -> date:
    return utcnow().date()


def _as_utc_naive(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def parse_iso_date(value) -> Optional[date]:
    """
    Posting and effective dates.

    Accepts a date, a datetime, "YYYY-MM-DD" or a full ISO-8601 timestamp
    (trailing "Z" allowed; offsets are folded into UTC before the date is
    taken). None and "" give None; anything else unparseable raises
    ValueError.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc_naive(value).date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    if len(text) == 10:
        return date.fromisoformat(text)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return _as_utc_naive(datetime.fromisoformat(text)).date()


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """Timestamp columns are stored naive UTC; render them with a trailing Z."""
    if dt is None:
        return None
    stamp = _as_utc_naive(dt).replace(microsecond=0)
    return stamp.isoformat() + "Z"


def to_iso_date(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None
