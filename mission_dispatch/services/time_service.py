from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

UTC = timezone.utc

__all__ = ["UTC", "utcnow", "ensure_utc", "is_expired", "is_fresh"]


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def is_expired(expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """An offer is void once *now* reaches ``expires_at``."""
    if expires_at is None:
        return False
    now = now or utcnow()
    return ensure_utc(expires_at) <= ensure_utc(now)


def is_fresh(
    observed_at: Optional[datetime],
    max_age: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    if observed_at is None:
        return False
    now = now or utcnow()
    return ensure_utc(now) - ensure_utc(observed_at) <= max_age
