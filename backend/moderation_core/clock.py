from datetime import datetime, timezone
from typing import Callable, Optional


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_dt(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to timezone-aware UTC instances."""
    if not value:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_between(start: Optional[datetime], end: datetime) -> float:
    start = normalize_dt(start)
    if start is None:
        return 0.0
    return max(0.0, (normalize_dt(end) - start).total_seconds() / 3600.0)
