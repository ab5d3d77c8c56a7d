"""
Composition of the dispatcher, scheduler, retrier, caches and eligibility
gate for the coaching app.

A plan request flows through the eligibility gate first (reads only), then
one keyed job per plan type goes to the WorkDispatcher. Once both jobs of a
request have succeeded, a single "plans ready" notification goes out through
the retrier. Independently,
per-user reminder entries in the DynamicScheduler send reminders directly.
"""

import datetime
import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import UTC
from typing import Any, Awaitable, Callable, Dict, Hashable, List, Optional, Tuple

from .cache import TTLCache
from .config import Settings
from .dispatcher import WorkDispatcher
from .eligibility import LockState, evaluate_generation_quota, evaluate_lock
from .errors import CheckInLockedError, GenerationQuotaError
from .job import Job, JobState, JobStatus
from .notifications import NotificationService, Notifier
from .retry import Retrier, RetryPolicy
from .schedule_entry import ScheduleEntry
from .scheduler import DynamicScheduler
from .store import Store

logger = logging.getLogger(__name__)

LANGUAGES = ("en", "ar")

MEAL_PLAN = "meal_plan"
WORKOUT_PLAN = "workout_plan"
PLAN_TYPES = (MEAL_PLAN, WORKOUT_PLAN)
REMINDER = "reminder"

REMINDER_PREFIX = "reminder-"
_REMINDER_TIME = re.compile(r"^(\d{1,2}):(\d{2})$")

# generator(owner_id=..., language=..., duration_days=..., plan_type=...) -> plan document
Generator = Callable[..., Awaitable[Any]]


def reminder_name(owner_id: str) -> str:
    return f"{REMINDER_PREFIX}{owner_id}"


def reminder_cron(reminder_time: str) -> str:
    """Turn an "HH:MM" UTC time of day into a daily five-field cron spec"""
    match = _REMINDER_TIME.match(reminder_time.strip())
    if not match:
        raise ValueError(f"Reminder time '{reminder_time}' must look like HH:MM")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Reminder time '{reminder_time}' is out of range")
    return f"{minute} {hour} * * *"


def request_key(owner_id: str, plan_type: str, language: str, duration_days: int) -> str:
    key_material = f"{owner_id}:{plan_type}:{language}:{duration_days}"
    return hashlib.sha256(key_material.encode()).hexdigest()[:16]


@dataclass
class PlanRequest:
    """The job pair of one generation request and the outcomes seen so far"""
    owner_id: str
    job_ids: Tuple[str, ...]
    outcomes: Dict[str, JobState] = field(default_factory=dict)

    @property
    def finished(self) -> bool:
        return len(self.outcomes) == len(self.job_ids)

    @property
    def succeeded(self) -> bool:
        return self.finished and all(state is JobState.SUCCEEDED for state in self.outcomes.values())


class CoachJobs:
    def __init__(self,
                 store: Store,
                 generator: Generator,
                 notifier: Notifier,
                 settings: Optional[Settings] = None,
                 *,
                 retrier: Optional[Retrier] = None,
                 clock: Optional[Callable[[], datetime.datetime]] = None,
                 cache_clock: Callable[[], float] = time.monotonic):
        """
        Args:
            store: Persistence collaborator (check-ins, plans, config, schedules)
            generator: Async plan generator, invoked as a dispatcher job handler
            notifier: Push/email transport
            settings: Tunables (defaults to ``Settings()``)
            retrier: Retrier for notifications (built from settings if None)
            clock: Returns the current UTC time
            cache_clock: Monotonic clock for the TTL caches
        """
        self.settings = settings or Settings()
        self.store = store
        self.generator = generator
        self._clock = clock or (lambda: datetime.datetime.now(UTC))

        self.retrier = retrier or Retrier(RetryPolicy(
            initial_backoff=self.settings.retry_initial_backoff,
            base=self.settings.retry_base,
            max_attempts=self.settings.retry_max_attempts,
        ))
        self.notifications = NotificationService(notifier, store, self.retrier)

        self.dispatcher = WorkDispatcher(
            self.settings.max_parallelism,
            max_queue_depth=self.settings.max_queue_depth,
            clock=self._clock,
        )
        self.dispatcher.register(MEAL_PLAN, self._generate_meal_plan, on_complete=self._on_generation_complete)
        self.dispatcher.register(WORKOUT_PLAN, self._generate_workout_plan, on_complete=self._on_generation_complete)
        # job id -> requests waiting on that job
        self._plan_requests: Dict[str, List[PlanRequest]] = {}

        self.scheduler = DynamicScheduler(
            self.dispatcher,
            store=store,
            direct_handlers={REMINDER: self._send_reminder},
            clock=self._clock,
        )

        self.caches: Dict[str, TTLCache] = {
            "faqs": TTLCache(self.settings.faq_cache_ttl, name="faqs-v1", clock=cache_clock),
            "pricing": TTLCache(self.settings.pricing_cache_ttl, name="pricing-v1", clock=cache_clock),
        }

    async def start(self):
        await self.dispatcher.start()
        await self.scheduler.start()

    async def shutdown(self, timeout: float = 30):
        await self.scheduler.shutdown(timeout=timeout)
        await self.dispatcher.shutdown(timeout=timeout)

    # Generation

    async def submit_generation(self, owner_id: str, language: str, duration_days: Optional[int] = None) -> List[str]:
        """
        Gate and enqueue a meal plan and a workout plan for ``owner_id``.

        Returns:
            list: Job ids, one per plan type

        Raises:
            ValueError: Unsupported language or non-positive duration
            CheckInLockedError: The owner is still in cooldown
            GenerationQuotaError: The owner used up this cycle's plans
        """
        if language not in LANGUAGES:
            raise ValueError(f"Unsupported language '{language}', expected one of {LANGUAGES}")
        if duration_days is not None and duration_days < 1:
            raise ValueError("duration_days must be positive")

        now = self._clock()
        cooldown_days = await self.store.read_cooldown_days()

        lock = await self._evaluate_lock(owner_id, cooldown_days, now)
        if lock.locked:
            raise CheckInLockedError(lock)

        since = now - datetime.timedelta(days=cooldown_days)
        created = await self.store.read_plan_creation_times(owner_id, since)
        quota = evaluate_generation_quota(created, cooldown_days, limit=self.settings.generation_limit, now=now)
        if not quota.allowed:
            raise GenerationQuotaError(quota)

        duration_days = duration_days or cooldown_days
        payload = {"owner_id": owner_id, "language": language, "duration_days": duration_days}

        job_ids = [
            self.dispatcher.submit(plan_type, payload, key=request_key(owner_id, plan_type, language, duration_days))
            for plan_type in PLAN_TYPES
        ]
        self._track_request(owner_id, tuple(job_ids))
        logger.info(f"Submitted plan generation for {owner_id} ({language}, {duration_days} days): {job_ids}")
        return job_ids

    def _track_request(self, owner_id: str, job_ids: Tuple[str, ...]):
        # A repeated request that got the same live jobs back is already tracked
        if any(request.job_ids == job_ids for request in self._plan_requests.get(job_ids[0], [])):
            return
        request = PlanRequest(owner_id, job_ids)
        for job_id in job_ids:
            self._plan_requests.setdefault(job_id, []).append(request)

    async def _generate_meal_plan(self, owner_id: str, language: str, duration_days: int):
        return await self.generator(owner_id=owner_id, language=language,
                                    duration_days=duration_days, plan_type=MEAL_PLAN)

    async def _generate_workout_plan(self, owner_id: str, language: str, duration_days: int):
        return await self.generator(owner_id=owner_id, language=language,
                                    duration_days=duration_days, plan_type=WORKOUT_PLAN)

    async def _on_generation_complete(self, job: Job):
        """Notify the owner once every job of a request has succeeded"""
        for request in self._plan_requests.pop(job.job_id, []):
            request.outcomes[job.job_id] = job.state
            if not request.finished:
                continue
            if request.succeeded:
                await self.notifications.notify_plan_ready(request.owner_id)
            else:
                failed = [job_id for job_id, state in request.outcomes.items() if state is not JobState.SUCCEEDED]
                logger.warning(f"Plan generation for {request.owner_id} failed ({failed}), not notifying")

    # Eligibility

    async def evaluate_lock(self, owner_id: str) -> LockState:
        cooldown_days = await self.store.read_cooldown_days()
        return await self._evaluate_lock(owner_id, cooldown_days, self._clock())

    async def _evaluate_lock(self, owner_id: str, cooldown_days: int, now: datetime.datetime) -> LockState:
        last_check_in = await self.store.read_last_check_in(owner_id)
        plan_start = None
        if last_check_in is None:
            plan_start = await self.store.read_plan_start_date(owner_id)
        return evaluate_lock(last_check_in, cooldown_days, fallback_at=plan_start, now=now)

    # Reminders

    async def schedule_reminder(self, owner_id: str, reminder_time: str) -> ScheduleEntry:
        """Register (or move) the owner's daily reminder; ``reminder_time`` is "HH:MM" in UTC"""
        return await self.scheduler.register(
            reminder_name(owner_id),
            reminder_cron(reminder_time),
            REMINDER,
            {"owner_id": owner_id},
        )

    async def cancel_reminder(self, owner_id: str) -> bool:
        return await self.scheduler.cancel(reminder_name(owner_id))

    def list_reminders(self) -> List[ScheduleEntry]:
        return [entry for entry in self.scheduler.list() if entry.name.startswith(REMINDER_PREFIX)]

    async def _send_reminder(self, owner_id: str):
        await self.notifications.send_reminder(owner_id)

    # Cached lookups

    async def cached_faqs(self, language: str) -> List[Dict[str, Any]]:
        return await self.caches["faqs"].fetch(language, self.store.read_faqs, language)

    async def cached_pricing(self) -> Dict[str, Any]:
        return await self.caches["pricing"].fetch("pricing", self.store.read_pricing)

    # Programmatic surface

    def submit_job(self, job_type: str, payload: Optional[Dict[str, Any]] = None, *, key: Optional[str] = None) -> str:
        return self.dispatcher.submit(job_type, payload, key=key)

    def job_status(self, job_id: str) -> JobStatus:
        return self.dispatcher.status(job_id)

    async def register_schedule(self, name: str, cron: str, job_type: str,
                                payload: Optional[Dict[str, Any]] = None) -> ScheduleEntry:
        return await self.scheduler.register(name, cron, job_type, payload)

    async def cancel_schedule(self, name: str) -> bool:
        return await self.scheduler.cancel(name)

    def list_schedules(self) -> List[ScheduleEntry]:
        return self.scheduler.list()

    async def cache_fetch(self, cache: str, key: Hashable, producer: Callable[..., Any], *args, **kwargs) -> Any:
        return await self.caches[cache].fetch(key, producer, *args, **kwargs)
