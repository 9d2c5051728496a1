from datetime import datetime, timedelta, timezone
from typing import Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[str]:
    """
    Fixed-width ISO string, so that SQL string comparison
    matches chronological order.
    """
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def from_db(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    return as_utc(datetime.fromisoformat(raw))


# start_at of a task that must not run again until someone reschedules it
PARKED_AT = datetime.max.replace(tzinfo=timezone.utc)


def add_capped(base: datetime, delay: timedelta) -> datetime:
    """base + delay, clamped below PARKED_AT instead of overflowing."""
    limit = PARKED_AT - timedelta(days=1)
    try:
        return min(base + delay, limit)
    except OverflowError:
        return limit
