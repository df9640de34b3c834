"""
Freshness policy for cached movie records.

A record is FRESH while `now < expires_at`. Once expired it is
STALE_BUT_USABLE: it must be refreshed, but may still be served when the
provider cannot be reached. A record that was never fetched successfully
(`last_fetched_at` unset) is permanently stale.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from ..schemas.movie import MovieRecord


class Freshness(str, Enum):
    FRESH = "fresh"
    STALE_BUT_USABLE = "stale_but_usable"
    MISSING = "missing"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify(now: datetime, record: Optional[MovieRecord]) -> Freshness:
    if record is None:
        return Freshness.MISSING
    if record.last_fetched_at is None or record.expires_at is None:
        return Freshness.STALE_BUT_USABLE
    if now < record.expires_at:
        return Freshness.FRESH
    return Freshness.STALE_BUT_USABLE


def expiry_for(fetched_at: datetime, ttl_hours: int) -> datetime:
    return fetched_at + timedelta(hours=ttl_hours)


def stamp_fetched(record: MovieRecord, fetched_at: datetime, ttl_hours: int) -> MovieRecord:
    """Return a copy carrying the cache metadata of a successful fetch."""
    return record.model_copy(update={
        "last_fetched_at": fetched_at,
        "expires_at": expiry_for(fetched_at, ttl_hours),
    })
