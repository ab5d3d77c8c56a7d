"""
Unit tests for ScheduleEntry.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from coach_jobs import ScheduleEntry
from coach_jobs.schedule_entry import floor_minute


@pytest.mark.unit
class TestScheduleEntry:
    """Tests for ScheduleEntry dataclass."""

    def test_required_fields(self):
        """name, cron and job_type are stored as given."""
        entry = ScheduleEntry(name="reminder-u1", cron="0 9 * * *", job_type="reminder")

        assert entry.name == "reminder-u1"
        assert entry.cron == "0 9 * * *"
        assert entry.job_type == "reminder"

    def test_default_values(self):
        """Entries start enabled with an empty payload and no firings."""
        entry = ScheduleEntry(name="daily", cron="0 0 * * *", job_type="cleanup")

        assert entry.payload == {}
        assert entry.enabled is True
        assert entry.last_fired_at is None
        assert entry.created_at.tzinfo is not None

    @pytest.mark.parametrize("cron", ["0 9 * *", "0 0 9 * * *", "61 9 * * *", "not a cron"])
    def test_invalid_cron_rejected(self, cron):
        """Wrong field counts and out-of-range values raise ValueError."""
        with pytest.raises(ValueError):
            ScheduleEntry(name="bad", cron=cron, job_type="reminder")

    def test_nickname_accepted(self):
        """croniter nicknames such as @daily are valid."""
        entry = ScheduleEntry(name="nightly", cron="@daily", job_type="cleanup")
        assert entry.matches(datetime(2025, 1, 1, 0, 0, tzinfo=UTC))

    def test_empty_name_rejected(self):
        """An entry needs a name."""
        with pytest.raises(ValueError):
            ScheduleEntry(name="", cron="* * * * *", job_type="reminder")

    def test_matches_whole_minute(self):
        """Any moment within the matching minute matches."""
        entry = ScheduleEntry(name="r", cron="30 9 * * *", job_type="reminder")

        assert entry.matches(datetime(2025, 1, 1, 9, 30, 0, tzinfo=UTC))
        assert entry.matches(datetime(2025, 1, 1, 9, 30, 59, tzinfo=UTC))
        assert not entry.matches(datetime(2025, 1, 1, 9, 31, tzinfo=UTC))

    def test_matches_in_utc(self):
        """Offset-aware times are converted to UTC before matching."""
        entry = ScheduleEntry(name="r", cron="0 9 * * *", job_type="reminder")
        plus_two = timezone(timedelta(hours=2))

        assert entry.matches(datetime(2025, 1, 1, 11, 0, tzinfo=plus_two))
        assert not entry.matches(datetime(2025, 1, 1, 9, 0, tzinfo=plus_two))

    def test_next_run(self):
        """next_run() returns the following firing in UTC."""
        entry = ScheduleEntry(name="r", cron="0 9 * * *", job_type="reminder")

        assert entry.next_run(datetime(2025, 1, 1, 8, 0, tzinfo=UTC)) == datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
        assert entry.next_run(datetime(2025, 1, 1, 9, 0, tzinfo=UTC)) == datetime(2025, 1, 2, 9, 0, tzinfo=UTC)

    def test_floor_minute(self):
        """floor_minute drops seconds and normalizes to UTC."""
        moment = datetime(2025, 1, 1, 9, 30, 42, 123, tzinfo=UTC)
        assert floor_minute(moment) == datetime(2025, 1, 1, 9, 30, tzinfo=UTC)
        assert floor_minute(datetime(2025, 1, 1, 9, 30, 42)).tzinfo == UTC
