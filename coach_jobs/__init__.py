from .cache import TTLCache
from .config import Settings
from .dispatcher import WorkDispatcher
from .eligibility import GenerationQuota, LockState, evaluate_generation_quota, evaluate_lock
from .errors import (
    CheckInLockedError,
    CoachJobsError,
    GenerationQuotaError,
    InvalidPayloadError,
    JobNotFoundError,
    PermanentError,
    QueueFullError,
    UnknownJobTypeError,
)
from .job import Job, JobState, JobStatus
from .notifications import Channel, DeliveryResult, NotificationService, Notifier
from .orchestrator import CoachJobs
from .retention import RetentionConfig, RetentionPolicy, RetentionTrigger
from .retry import Retrier, RetryAttempt, RetryExhausted, RetryPolicy, RetrySuccess
from .schedule_entry import ScheduleEntry
from .scheduler import DynamicScheduler
from .store import InMemoryStore, PostgresStore, Store

__all__ = [
    "Channel",
    "CheckInLockedError",
    "CoachJobs",
    "CoachJobsError",
    "DeliveryResult",
    "DynamicScheduler",
    "GenerationQuota",
    "GenerationQuotaError",
    "InMemoryStore",
    "InvalidPayloadError",
    "Job",
    "JobNotFoundError",
    "JobState",
    "JobStatus",
    "LockState",
    "NotificationService",
    "Notifier",
    "PermanentError",
    "PostgresStore",
    "QueueFullError",
    "RetentionConfig",
    "RetentionPolicy",
    "RetentionTrigger",
    "Retrier",
    "RetryAttempt",
    "RetryExhausted",
    "RetryPolicy",
    "RetrySuccess",
    "ScheduleEntry",
    "Settings",
    "Store",
    "TTLCache",
    "UnknownJobTypeError",
    "WorkDispatcher",
    "evaluate_generation_quota",
    "evaluate_lock",
]

__version__ = "0.1.0"
