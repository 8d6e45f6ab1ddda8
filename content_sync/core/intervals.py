from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

ALLOWED_HOURLY_STEPS = (1, 2, 3, 4, 6, 8, 12)


class SyncInterval(str, Enum):
    MANUAL = "manual"
    HOURLY_1 = "hourly_1"
    HOURLY_2 = "hourly_2"
    HOURLY_3 = "hourly_3"
    HOURLY_4 = "hourly_4"
    HOURLY_6 = "hourly_6"
    HOURLY_8 = "hourly_8"
    HOURLY_12 = "hourly_12"
    DAILY = "daily"


def parse_sync_interval(value: str | SyncInterval | None) -> SyncInterval:
    """Parse a stored or user-supplied interval policy.

    ``None`` and the empty string mean ``manual``. Unknown values, including
    hourly steps outside the allowed set, raise ``ValueError``.
    """
    if isinstance(value, SyncInterval):
        return value
    normalized = (value or "").strip().lower()
    if not normalized:
        return SyncInterval.MANUAL
    try:
        return SyncInterval(normalized)
    except ValueError:
        allowed = ", ".join(item.value for item in SyncInterval)
        raise ValueError(f"Unsupported sync interval {value!r}; expected one of: {allowed}") from None


def interval_to_timedelta(interval: str | SyncInterval | None) -> timedelta | None:
    parsed = parse_sync_interval(interval)
    if parsed == SyncInterval.MANUAL:
        return None
    if parsed == SyncInterval.DAILY:
        return timedelta(hours=24)
    return timedelta(hours=int(parsed.value.split("_", 1)[1]))


def is_due(last_run_at: datetime | None, interval: str | SyncInterval | None, now: datetime) -> bool:
    step = interval_to_timedelta(interval)
    if step is None:
        return False
    if last_run_at is None:
        return True
    return now - last_run_at >= step
