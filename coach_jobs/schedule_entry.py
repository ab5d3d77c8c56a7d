import datetime
from dataclasses import dataclass, field
from datetime import UTC
from typing import Any, Dict, Optional

from croniter import croniter


def _validate_cron(cron: str):
    # Five-field specs or croniter nicknames like "@daily"; no seconds field
    if not cron.startswith("@") and len(cron.split()) != 5:
        raise ValueError(f"Cron spec '{cron}' must have exactly five fields")
    if not croniter.is_valid(cron):
        raise ValueError(f"Invalid cron spec '{cron}'")


@dataclass
class ScheduleEntry:
    """
    One recurring job owned by an entity, e.g. ``reminder-<userId>``.

    Args:
        name: Unique name of the owning entity's schedule
        cron: Five-field cron spec, interpreted in UTC
        job_type: Job type submitted to the dispatcher on each firing
        payload: Fixed keyword arguments passed with every firing
        enabled: Disabled entries stay registered but never fire
    """
    name: str
    cron: str
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    created_at: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(UTC))
    last_fired_at: Optional[datetime.datetime] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Schedule entry name must not be empty")
        if not self.job_type:
            raise ValueError("Schedule entry job_type must not be empty")
        _validate_cron(self.cron)

    def matches(self, moment: datetime.datetime) -> bool:
        """Whether the spec matches the minute containing ``moment``"""
        return croniter.match(self.cron, floor_minute(moment))

    def next_run(self, after: Optional[datetime.datetime] = None) -> datetime.datetime:
        """Next firing time strictly after ``after`` (defaults to now), in UTC"""
        base = _to_utc(after) if after is not None else datetime.datetime.now(UTC)
        next_run = croniter(self.cron, base).get_next(datetime.datetime)
        if next_run.tzinfo is None:
            next_run = next_run.replace(tzinfo=UTC)
        return next_run.astimezone(UTC)


def _to_utc(moment: datetime.datetime) -> datetime.datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def floor_minute(moment: datetime.datetime) -> datetime.datetime:
    return _to_utc(moment).replace(second=0, microsecond=0)
