"""
Job records owned by the WorkDispatcher.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, Optional


class JobState(Enum):
    """
    Lifecycle state of a dispatcher job.

    A job is created ``queued``, promoted to ``running`` when a concurrency
    slot frees up, and ends in exactly one terminal state.

    Attributes:
        QUEUED: Waiting in the FIFO queue for a free slot
        RUNNING: Handler is currently executing
        SUCCEEDED: Handler returned normally
        FAILED: Handler raised (after any configured attempts were used up)
        CANCELLED: Withdrawn by the caller while still queued
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)

    def __str__(self) -> str:
        return self.value


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Job:
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    job_id: str = field(default_factory=new_job_id)
    state: JobState = JobState.QUEUED
    attempt: int = 0
    max_attempts: int = 1
    key: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def snapshot(self) -> "JobStatus":
        return JobStatus(
            job_id=self.job_id,
            job_type=self.job_type,
            state=self.state,
            result=self.result,
            error=self.error,
            attempt=self.attempt,
        )


@dataclass(frozen=True)
class JobStatus:
    """Immutable view of a job returned to callers"""
    job_id: str
    job_type: str
    state: JobState
    result: Any = None
    error: Optional[str] = None
    attempt: int = 0
