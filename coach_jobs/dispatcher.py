import asyncio
import datetime
import inspect
import logging
from collections import Counter, deque
from dataclasses import dataclass
from datetime import UTC
from typing import Any, Callable, Deque, Dict, Optional, Set

from .errors import (
    InvalidPayloadError,
    JobNotFoundError,
    PermanentError,
    QueueFullError,
    UnknownJobTypeError,
)
from .job import Job, JobState, JobStatus
from .retention import RetentionConfig, RetentionTrigger
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class JobHandler:
    """Registered execution settings for one job type"""
    func: Callable
    signature: inspect.Signature
    on_complete: Optional[Callable] = None
    retry: Optional[RetryPolicy] = None
    timeout: Optional[float] = None

    @property
    def max_attempts(self) -> int:
        return self.retry.max_attempts if self.retry else 1


class WorkDispatcher:
    def __init__(self,
                 max_parallelism: int = 5,
                 *,
                 max_queue_depth: Optional[int] = None,
                 retention: Optional[RetentionConfig] = None,
                 retention_enabled: bool = True,
                 clock: Optional[Callable[[], datetime.datetime]] = None):
        """
        Initialize the dispatcher with a fixed concurrency ceiling.

        Args:
            max_parallelism: Maximum number of jobs in the ``running`` state at once
            max_queue_depth: Reject submissions once this many jobs are waiting.
                             None means the queue is unbounded.
            retention: How long terminal job records are kept (uses defaults if None)
            retention_enabled: Whether to run the background prune loop
            clock: Returns the current UTC time (used for job timestamps and pruning)
        """
        if max_parallelism < 1:
            raise ValueError("max_parallelism must be positive")
        if max_queue_depth is not None and max_queue_depth < 0:
            raise ValueError("max_queue_depth must be non-negative")

        self.max_parallelism = max_parallelism
        self.max_queue_depth = max_queue_depth
        self.retention = retention or RetentionConfig()
        self.retention_enabled = retention_enabled
        self._clock = clock or (lambda: datetime.datetime.now(UTC))

        self.is_running = False
        self.is_shutting_down = False

        self._handlers: Dict[str, JobHandler] = {}
        self._jobs: Dict[str, Job] = {}
        self._queue: Deque[str] = deque()  # FIFO of job ids waiting for a slot
        self._running: Set[str] = set()
        self._keys: Dict[str, str] = {}  # dedup key -> id of the live job holding it
        self._retry_timers: Dict[str, asyncio.TimerHandle] = {}
        self._done_events: Dict[str, asyncio.Event] = {}

        self.active_tasks: Set[asyncio.Task] = set()
        self.callback_tasks: Set[asyncio.Task] = set()
        self.prune_task = None

        logger.info(f"WorkDispatcher initialized: max_parallelism={max_parallelism}, "
                    f"max_queue_depth={max_queue_depth}")

    # Registration

    def register(self,
                 job_type: str,
                 handler: Callable,
                 *,
                 on_complete: Optional[Callable] = None,
                 retry: Optional[RetryPolicy] = None,
                 timeout: Optional[float] = None) -> None:
        """
        Register the async handler that executes jobs of ``job_type``.

        Args:
            job_type: Tag used by ``submit``
            handler: Async function called with the job payload as keyword arguments
            on_complete: Called with the Job once it succeeds or finally fails.
                         Runs as a detached task; its errors are logged only.
            retry: Re-run failed attempts with this backoff schedule. Without it a
                   failing handler fails the job on the first error.
            timeout: Seconds an attempt may run before it counts as failed
        """
        if not inspect.iscoroutinefunction(handler):
            raise TypeError(f"Expected an async function, got {type(handler)}")
        if timeout is not None and timeout <= 0:
            raise ValueError("timeout must be positive")

        self._handlers[job_type] = JobHandler(
            func=handler,
            signature=inspect.signature(handler),
            on_complete=on_complete,
            retry=retry,
            timeout=timeout,
        )
        logger.debug(f"Registered handler {handler.__name__} for job type {job_type}")

    def handles(self, job_type: str) -> bool:
        return job_type in self._handlers

    # Lifecycle

    async def start(self):
        """Start accepting jobs and the retention loop"""
        if self.is_running:
            return

        self.is_running = True
        self.is_shutting_down = False

        if self.retention_enabled:
            self.prune_task = asyncio.create_task(self._prune_loop())

        logger.debug(f"WorkDispatcher started: retention_enabled={self.retention_enabled}")

    async def shutdown(self, timeout: float = 30):
        """
        Stop accepting jobs, withdraw queued ones and wait for running jobs.

        Queued jobs are marked ``cancelled``; running jobs get ``timeout``
        seconds to finish before they are cancelled and marked ``failed``.
        """
        if not self.is_running or self.is_shutting_down:
            return

        logger.debug("Gracefully stopping dispatcher...")
        self.is_shutting_down = True
        self.is_running = False

        for job_id in list(self._queue) + list(self._retry_timers):
            self._withdraw(self._jobs[job_id], "Dispatcher shut down before execution")

        if self.active_tasks:
            logger.debug(f"Waiting for {len(self.active_tasks)} running jobs to complete...")
            await asyncio.wait(set(self.active_tasks), timeout=timeout)

            remaining_tasks = [task for task in self.active_tasks if not task.done()]
            if remaining_tasks:
                logger.warning(f"Cancelling {len(remaining_tasks)} jobs still running after {timeout}s")
                for task in remaining_tasks:
                    task.cancel()
                await asyncio.gather(*remaining_tasks, return_exceptions=True)

        if self.callback_tasks:
            await asyncio.wait(set(self.callback_tasks), timeout=timeout)
            for task in self.callback_tasks:
                task.cancel()
            await asyncio.gather(*self.callback_tasks, return_exceptions=True)

        if self.prune_task and not self.prune_task.done():
            self.prune_task.cancel()
            await asyncio.gather(self.prune_task, return_exceptions=True)

        logger.debug("Dispatcher stopped gracefully")

    # Submission and status

    def submit(self, job_type: str, payload: Optional[Dict[str, Any]] = None, *, key: Optional[str] = None) -> str:
        """
        Enqueue a job and return its id immediately.

        The job starts right away when a slot is free, otherwise it waits in
        FIFO order. When ``key`` matches a job that is still queued or
        running, that job's id is returned and nothing new is enqueued.

        Raises:
            UnknownJobTypeError: No handler is registered for ``job_type``
            InvalidPayloadError: The payload doesn't fit the handler's signature
            QueueFullError: ``max_queue_depth`` waiting jobs already
            RuntimeError: The dispatcher is not running
        """
        if not self.is_running:
            raise RuntimeError("Dispatcher is not running")

        handler = self._handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(job_type)

        payload = dict(payload or {})
        try:
            handler.signature.bind(**payload)
        except TypeError as e:
            raise InvalidPayloadError(f"Invalid payload for job type {job_type}: {e}") from e

        if key is not None and key in self._keys:
            existing_id = self._keys[key]
            logger.debug(f"Job with key {key} already in flight as {existing_id}")
            return existing_id

        if (len(self._running) >= self.max_parallelism
                and self.max_queue_depth is not None
                and self.queue_depth >= self.max_queue_depth):
            raise QueueFullError(f"Queue depth limit {self.max_queue_depth} reached")

        job = Job(
            job_type=job_type,
            payload=payload,
            max_attempts=handler.max_attempts,
            key=key,
            enqueued_at=self._clock(),
        )
        self._jobs[job.job_id] = job
        if key is not None:
            self._keys[key] = job.job_id
        self._queue.append(job.job_id)

        logger.debug(f"Submitted job {job.job_id} ({job_type}), queue_depth={len(self._queue)}")
        self._promote()
        return job.job_id

    def status(self, job_id: str) -> JobStatus:
        """Current state of a job, with its result or error once terminal"""
        return self._read(self._get(job_id))

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        """Wait until the job reaches a terminal state and return its status"""
        job = self._get(job_id)
        if not job.state.is_terminal:
            event = self._done_events.setdefault(job_id, asyncio.Event())
            await asyncio.wait_for(event.wait(), timeout)
        return self._read(job)

    def cancel(self, job_id: str) -> bool:
        """
        Withdraw a queued job.

        Returns:
            bool: True if the job was withdrawn, False if it is already
            running or finished (running jobs are never interrupted)
        """
        job = self._get(job_id)
        if job.state is not JobState.QUEUED:
            logger.warning(f"Job {job_id} could not be cancelled (state={job.state})")
            return False

        self._withdraw(job, "Cancelled before execution")
        return True

    @property
    def queue_depth(self) -> int:
        """Jobs waiting for a slot, including those backing off between attempts"""
        return len(self._queue) + len(self._retry_timers)

    @property
    def running_count(self) -> int:
        return len(self._running)

    def stats(self) -> Dict[str, int]:
        counts = Counter(job.state for job in self._jobs.values())
        return {state.value: counts.get(state, 0) for state in JobState}

    # Execution

    def _promote(self):
        """Start queued jobs in submission order while slots are free"""
        if self.is_shutting_down:
            return
        while self._queue and len(self._running) < self.max_parallelism:
            job = self._jobs[self._queue.popleft()]
            job.state = JobState.RUNNING
            job.attempt += 1
            job.started_at = self._clock()
            self._running.add(job.job_id)

            task = asyncio.create_task(self.execute_job(job))
            self.active_tasks.add(task)
            task.add_done_callback(self.active_tasks.discard)

    async def execute_job(self, job: Job):
        """Run one attempt of a job and record its outcome"""
        handler = self._handlers[job.job_type]
        logger.debug(f"Executing job {job.job_id} ({job.job_type}) "
                     f"attempt {job.attempt}/{job.max_attempts}")

        try:
            if handler.timeout is not None:
                try:
                    result = await asyncio.wait_for(handler.func(**job.payload), timeout=handler.timeout)
                except asyncio.TimeoutError:
                    raise TimeoutError(f"Job execution timed out after {handler.timeout}s")
            else:
                result = await handler.func(**job.payload)
        except asyncio.CancelledError:
            self._finish(job, JobState.FAILED, error="Job cancelled while running")
            raise
        except PermanentError as e:
            self._finish(job, JobState.FAILED, error=str(e))
            logger.error(f"Job {job.job_id} failed with a permanent error: {e}")
        except Exception as e:
            self._handle_job_failure(job, handler, e)
        else:
            self._finish(job, JobState.SUCCEEDED, result=result)
            logger.debug(f"Job {job.job_id} completed successfully")

    def _handle_job_failure(self, job: Job, handler: JobHandler, error: Exception):
        """Re-queue the job after a backoff or mark it as failed for good"""
        error_message = str(error) or type(error).__name__

        if job.attempt < job.max_attempts:
            delay = handler.retry.delay_for(job.attempt)
            job.state = JobState.QUEUED
            job.error = error_message[:1000]
            self._running.discard(job.job_id)

            # Back off on a loop timer so the slot is free while we wait
            loop = asyncio.get_running_loop()
            self._retry_timers[job.job_id] = loop.call_later(delay, self._requeue, job.job_id)
            logger.warning(f"Job {job.job_id} failed (attempt {job.attempt}/{job.max_attempts}), "
                           f"retrying in {delay}s: {error_message}")
            self._promote()
        else:
            self._finish(job, JobState.FAILED, error=error_message)
            logger.error(f"Job {job.job_id} permanently failed after {job.attempt} attempts: {error_message}")

    def _requeue(self, job_id: str):
        self._retry_timers.pop(job_id, None)
        job = self._jobs.get(job_id)
        if job is None or job.state is not JobState.QUEUED:
            return
        self._queue.append(job_id)
        self._promote()

    def _withdraw(self, job: Job, reason: str):
        if job.job_id in self._queue:
            self._queue.remove(job.job_id)
        timer = self._retry_timers.pop(job.job_id, None)
        if timer is not None:
            timer.cancel()
        self._finish(job, JobState.CANCELLED, error=reason)
        logger.debug(f"Job {job.job_id} withdrawn: {reason}")

    def _finish(self, job: Job, state: JobState, *, result: Any = None, error: Optional[str] = None):
        """Move a job to a terminal state, free its slot and promote the next one"""
        job.state = state
        job.result = result
        job.error = error[:1000] if error else None
        job.completed_at = self._clock()

        self._running.discard(job.job_id)
        if job.key is not None and self._keys.get(job.key) == job.job_id:
            del self._keys[job.key]

        event = self._done_events.pop(job.job_id, None)
        if event is not None:
            event.set()

        handler = self._handlers.get(job.job_type)
        if state is not JobState.CANCELLED and handler and handler.on_complete:
            task = asyncio.create_task(self._run_completion_callback(handler.on_complete, job))
            self.callback_tasks.add(task)
            task.add_done_callback(self.callback_tasks.discard)

        self._promote()

    async def _run_completion_callback(self, callback: Callable, job: Job):
        try:
            outcome = callback(job)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Completion callback for job {job.job_id} ({job.job_type}) failed: {e}")

    # Record retention

    def _get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _read(self, job: Job) -> JobStatus:
        status = job.snapshot()
        if job.state.is_terminal:
            policy = self.retention.policy_for(job.state)
            if policy.trigger == RetentionTrigger.AFTER_READ:
                self._jobs.pop(job.job_id, None)
        return status

    def prune(self, now: Optional[datetime.datetime] = None) -> int:
        """
        Drop terminal job records according to the retention config.

        Returns:
            int: Number of records removed
        """
        now = now or self._clock()
        deleted = 0

        for state in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED):
            policy = self.retention.policy_for(state)
            finished = [job for job in self._jobs.values() if job.state is state]

            if policy.trigger == RetentionTrigger.TIME_BASED:
                cutoff = now - datetime.timedelta(seconds=policy.seconds)
                expired = [job for job in finished if job.completed_at <= cutoff]
            elif policy.trigger == RetentionTrigger.COUNT_BASED:
                finished.sort(key=lambda job: job.completed_at, reverse=True)
                expired = finished[policy.keep_count:]
            else:
                expired = []

            for job in expired:
                del self._jobs[job.job_id]
            deleted += len(expired)

        if deleted:
            logger.debug(f"Pruned {deleted} terminal job records")
        return deleted

    async def _prune_loop(self):
        """Background task that periodically prunes terminal job records"""
        while self.is_running and not self.is_shutting_down:
            try:
                await asyncio.sleep(self.retention.interval_seconds)
                self.prune()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Prune task error: {e}")
