from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from dateutil import parser as dtparser


TimestampLike = Union[str, int, float, datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(ts: TimestampLike) -> datetime:
    """Parse ISO-8601 strings, epoch seconds or datetimes and normalize to UTC."""
    if isinstance(ts, datetime):
        dt = ts
    elif isinstance(ts, (int, float)) and not isinstance(ts, bool):
        dt = datetime.fromtimestamp(float(ts), tz=timezone.utc)
    else:
        dt = dtparser.isoparse(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_iso_utc(dt: datetime) -> str:
    """Serialize datetime to an ISO string with Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def safe_parse_ts(ts: Optional[TimestampLike]) -> Optional[datetime]:
    if ts is None or ts == "" or isinstance(ts, bool):
        return None
    try:
        return parse_ts(ts)
    except (ValueError, OverflowError, OSError, TypeError):
        return None
