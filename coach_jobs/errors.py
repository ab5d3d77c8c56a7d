"""
Exception types raised by coach_jobs components.

Handler failures inside the dispatcher are captured on the Job record and
never raised across the dispatcher boundary; the classes here cover the
errors that *are* reported to callers.
"""


class CoachJobsError(Exception):
    """Base class for all coach_jobs errors"""


class PermanentError(CoachJobsError):
    """
    Raised by an operation or job handler to signal a non-retryable failure.

    The retrier and the dispatcher stop retrying as soon as they see it,
    regardless of how much of the retry budget is left.
    """


class UnknownJobTypeError(CoachJobsError, KeyError):
    """No handler is registered for the submitted job type"""


class JobNotFoundError(CoachJobsError, KeyError):
    """The job id is unknown or its record has already been pruned"""


class QueueFullError(CoachJobsError):
    """The dispatcher queue reached its configured maximum depth"""


class CheckInLockedError(CoachJobsError):
    """A submission was attempted while the owner is still in cooldown"""

    def __init__(self, lock_state):
        self.lock_state = lock_state
        super().__init__(
            f"Check-in locked for {lock_state.days_remaining} more day(s), "
            f"next eligible at {lock_state.next_eligible_at.isoformat()}"
        )


class GenerationQuotaError(CoachJobsError):
    """Plan generation limit reached for the current cycle"""

    def __init__(self, quota):
        self.quota = quota
        super().__init__(f"Plan generation limit reached for this cycle ({quota.used}/{quota.limit})")


class InvalidPayloadError(CoachJobsError, ValueError):
    """The payload does not match the job handler's signature"""
