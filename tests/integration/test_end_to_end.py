"""
Integration tests for plan generation, notifications and reminders working
together through CoachJobs.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from coach_jobs import CoachJobs, InMemoryStore, JobState, Retrier, Settings
from coach_jobs.notifications import PLAN_READY_MESSAGE, PLAN_READY_TEMPLATE


class SlowGenerator:
    """Generator that holds every request until released and tracks peak concurrency."""

    def __init__(self):
        self.release = asyncio.Event()
        self.active = 0
        self.peak = 0
        self.calls = []

    async def __call__(self, owner_id, language, duration_days, plan_type):
        self.calls.append((owner_id, plan_type))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        if owner_id == "broken":
            raise RuntimeError("generation failed")
        return {"owner_id": owner_id, "plan_type": plan_type}


class PushOutageNotifier:
    """Push gateway that is down for some subscribers."""

    def __init__(self, down_for=()):
        self.down_for = set(down_for)
        self.push_attempts = []
        self.pushes = []
        self.emails = []

    async def send_push(self, subscriber_id, message):
        self.push_attempts.append(subscriber_id)
        if subscriber_id in self.down_for:
            raise ConnectionError("push gateway timeout")
        self.pushes.append((subscriber_id, message))

    async def send_email_fallback(self, owner_id, template):
        self.emails.append((owner_id, template))


@pytest.mark.integration
class TestEndToEnd:
    """Full flows through the orchestration layer."""

    async def _build(self, generator, notifier, recording_sleep, now=None):
        store = InMemoryStore()
        clock_value = now or datetime(2025, 3, 3, 8, 0, tzinfo=UTC)
        coach = CoachJobs(store, generator, notifier, Settings(max_parallelism=5),
                          retrier=Retrier(sleep=recording_sleep), clock=lambda: clock_value)
        await coach.start()
        return coach, store

    async def test_burst_respects_pool_and_notifies_successes(self, recording_sleep, wait_until):
        """Four owners submit at once: 8 jobs, 5 run, 3 queue; each fully successful owner gets one push."""
        generator = SlowGenerator()
        notifier = PushOutageNotifier()
        coach, store = await self._build(generator, notifier, recording_sleep)
        owners = ["u1", "u2", "u3", "broken"]
        for owner in owners:
            store.set_push_subscription(owner, f"sub-{owner}")

        job_ids = []
        for owner in owners:
            job_ids.extend(await coach.submit_generation(owner, "en"))

        assert len(job_ids) == 8
        await wait_until(lambda: generator.active == 5)
        assert coach.dispatcher.running_count == 5
        assert coach.dispatcher.queue_depth == 3

        generator.release.set()
        statuses = [await coach.dispatcher.wait(job_id, timeout=2) for job_id in job_ids]
        await wait_until(lambda: not coach.dispatcher.callback_tasks)

        assert generator.peak == 5
        by_state = {}
        for status in statuses:
            by_state.setdefault(status.state, []).append(status)
        assert len(by_state[JobState.SUCCEEDED]) == 6
        assert len(by_state[JobState.FAILED]) == 2

        pushed_to = sorted(sub for sub, _ in notifier.pushes)
        assert pushed_to == ["sub-u1", "sub-u2", "sub-u3"]
        assert all(message == PLAN_READY_MESSAGE for _, message in notifier.pushes)
        assert "sub-broken" not in notifier.push_attempts

        await coach.shutdown(timeout=1)

    async def test_push_outage_falls_back_to_email(self, recording_sleep, wait_until):
        """A push that fails three times with 1s and 2s waits ends in an email."""
        generator = SlowGenerator()
        generator.release.set()
        notifier = PushOutageNotifier(down_for={"sub-u1"})
        coach, store = await self._build(generator, notifier, recording_sleep)
        store.set_push_subscription("u1", "sub-u1")

        job_ids = await coach.submit_generation("u1", "en", duration_days=7)
        for job_id in job_ids:
            await coach.dispatcher.wait(job_id, timeout=1)
        await wait_until(lambda: not coach.dispatcher.callback_tasks)

        # One notification for the pair of plans, three push attempts
        assert notifier.push_attempts == ["sub-u1"] * 3
        assert recording_sleep.delays == [1.0, 2.0]
        assert notifier.emails == [("u1", PLAN_READY_TEMPLATE)]

        await coach.shutdown(timeout=1)

    async def test_lock_then_unlock_cycle(self, recording_sleep):
        """After a check-in the owner waits a full cooldown before the next request."""
        generator = SlowGenerator()
        generator.release.set()
        notifier = PushOutageNotifier()
        day0 = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
        coach, store = await self._build(generator, notifier, recording_sleep, now=day0 + timedelta(days=10))
        store.record_check_in("u1", day0)

        lock = await coach.evaluate_lock("u1")
        assert lock.locked
        assert lock.days_remaining == 4
        await coach.shutdown(timeout=1)

        coach, store_later = await self._build(generator, notifier, recording_sleep, now=day0 + timedelta(days=14))
        store_later.record_check_in("u1", day0)
        job_ids = await coach.submit_generation("u1", "en")
        assert len(job_ids) == 2
        await coach.shutdown(timeout=5)

    async def test_reminder_reschedule_fires_new_time_only(self, recording_sleep):
        """Moving a reminder means only the new time fires, once per day."""
        generator = SlowGenerator()
        notifier = PushOutageNotifier()
        coach, store = await self._build(generator, notifier, recording_sleep)
        store.set_push_subscription("u1", "sub-u1")

        await coach.schedule_reminder("u1", "09:00")
        await coach.schedule_reminder("u1", "18:30")

        day = datetime(2025, 3, 4, tzinfo=UTC)
        fired = []
        for minute in range(24 * 60):
            fired.extend(coach.scheduler.tick(day + timedelta(minutes=minute)))
        await asyncio.gather(*coach.scheduler.direct_tasks)

        assert fired == ["reminder-u1"]
        assert coach.list_reminders()[0].last_fired_at == day.replace(hour=18, minute=30)
        assert len(notifier.pushes) == 1

        await coach.shutdown(timeout=1)
