"""
Check-in lock and generation quota computations.

Everything here is a pure function of the timestamps passed in: no I/O, no
state. Callers fetch the baseline timestamps and the cooldown from their
store and pass ``now`` explicitly when they need reproducible answers.
"""

import math
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Iterable, Optional, Union

SECONDS_PER_DAY = 24 * 60 * 60

Timestamp = Union[datetime, date]


@dataclass(frozen=True)
class LockState:
    locked: bool
    next_eligible_at: Optional[datetime]
    days_remaining: int = 0


@dataclass(frozen=True)
class GenerationQuota:
    allowed: bool
    used: int
    limit: int
    window_start: datetime


def _as_utc(value: Timestamp) -> datetime:
    """Normalize dates and naive datetimes to aware UTC datetimes"""
    if not isinstance(value, datetime):
        return datetime.combine(value, time.min, tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def evaluate_lock(last_event_at: Optional[Timestamp],
                  cooldown_days: float,
                  *,
                  fallback_at: Optional[Timestamp] = None,
                  now: Optional[datetime] = None) -> LockState:
    """
    Decide whether an owner may submit again.

    Args:
        last_event_at: Time of the last completed check-in, if any
        cooldown_days: Minimum days between two gated submissions
        fallback_at: Baseline used when there is no prior event (e.g. plan start date)
        now: Current time (defaults to the wall clock, UTC)

    Returns:
        LockState. ``days_remaining`` is rounded up to whole days and is 0
        whenever the owner is not locked. With neither a last event nor a
        fallback the owner is unlocked and ``next_eligible_at`` is None.

    Example:
        >>> day0 = datetime(2025, 1, 1, tzinfo=UTC)
        >>> evaluate_lock(day0, 14, now=day0 + timedelta(days=10))
        LockState(locked=True, next_eligible_at=datetime.datetime(2025, 1, 15, 0, 0, tzinfo=datetime.timezone.utc), days_remaining=4)
    """
    if cooldown_days < 0:
        raise ValueError("cooldown_days must be non-negative")

    baseline = last_event_at if last_event_at is not None else fallback_at
    if baseline is None:
        return LockState(locked=False, next_eligible_at=None, days_remaining=0)

    now = _as_utc(now) if now is not None else datetime.now(UTC)
    next_eligible_at = _as_utc(baseline) + timedelta(days=cooldown_days)
    locked = now < next_eligible_at

    days_remaining = 0
    if locked:
        days_remaining = math.ceil((next_eligible_at - now).total_seconds() / SECONDS_PER_DAY)

    return LockState(locked=locked, next_eligible_at=next_eligible_at, days_remaining=days_remaining)


def evaluate_generation_quota(plan_created_at: Iterable[Timestamp],
                              cooldown_days: float,
                              *,
                              limit: int = 2,
                              now: Optional[datetime] = None) -> GenerationQuota:
    """Count plans generated in the trailing cooldown window against ``limit``"""
    if cooldown_days < 0:
        raise ValueError("cooldown_days must be non-negative")
    if limit < 0:
        raise ValueError("limit must be non-negative")

    now = _as_utc(now) if now is not None else datetime.now(UTC)
    window_start = now - timedelta(days=cooldown_days)
    used = sum(1 for created in plan_created_at if _as_utc(created) >= window_start)

    return GenerationQuota(allowed=used < limit, used=used, limit=limit, window_start=window_start)
