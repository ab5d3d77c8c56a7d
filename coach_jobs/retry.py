"""
Bounded exponential-backoff retries for side-effecting operations.

The retrier never raises the wrapped operation's error. It always returns a
typed result, ``RetrySuccess`` or ``RetryExhausted``, so fire-and-forget
callers can log and move on while job handlers can turn exhaustion into a
job failure.
"""

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .errors import PermanentError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff schedule for the retrier.

    Attempt ``n`` (1-based) that fails is followed by a wait of
    ``initial_backoff * base ** (n - 1)`` seconds before attempt ``n + 1``.

    Args:
        initial_backoff: Seconds to wait after the first failed attempt
        base: Multiplicative growth factor between consecutive waits
        max_attempts: Total number of attempts, the first one included
        max_backoff: Optional ceiling for a single wait
    """
    initial_backoff: float = 1.0
    base: float = 2.0
    max_attempts: int = 3
    max_backoff: Optional[float] = None

    def __post_init__(self):
        if self.initial_backoff < 0:
            raise ValueError("initial_backoff must be non-negative")
        if self.base < 1:
            raise ValueError("base must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.max_backoff is not None and self.max_backoff < 0:
            raise ValueError("max_backoff must be non-negative")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt``"""
        if attempt < 1:
            raise ValueError("attempt numbers start at 1")
        delay = self.initial_backoff * self.base ** (attempt - 1)
        if self.max_backoff is not None:
            delay = min(delay, self.max_backoff)
        return delay


@dataclass(frozen=True)
class RetrySuccess:
    value: Any
    attempts: int

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class RetryExhausted:
    """
    The operation did not succeed within the retry budget.

    ``permanent`` is True when the operation raised ``PermanentError`` and
    retrying was cut short.
    """
    last_error: BaseException
    attempts: int
    permanent: bool = False

    @property
    def ok(self) -> bool:
        return False


RetryResult = Union[RetrySuccess, RetryExhausted]


@dataclass
class RetryAttempt:
    """Bookkeeping for an operation currently waiting to be retried"""
    operation_id: str
    attempt: int
    last_error: Optional[BaseException]
    next_retry_at: datetime


class Retrier:
    def __init__(self,
                 policy: Optional[RetryPolicy] = None,
                 *,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            policy: Backoff schedule (defaults to 1s initial, base 2, 3 attempts)
            sleep: Coroutine used to wait between attempts
            clock: Returns the current UTC time, used for ``next_retry_at``
        """
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))
        self._in_flight: Dict[str, RetryAttempt] = {}

    async def run(self, operation: Callable[..., Any], *args, **kwargs) -> RetryResult:
        """
        Run ``operation(*args, **kwargs)`` until it succeeds or the budget runs out.

        Returns:
            RetrySuccess with the operation's return value, or RetryExhausted
            carrying the last error and the number of attempts made.
        """
        op_name = getattr(operation, "__name__", type(operation).__name__)
        operation_id = f"{op_name}:{uuid.uuid4().hex[:8]}"
        max_attempts = self.policy.max_attempts
        attempt = 0

        try:
            while True:
                attempt += 1
                try:
                    value = operation(*args, **kwargs)
                    if inspect.isawaitable(value):
                        value = await value
                except PermanentError as e:
                    logger.error(f"Operation {operation_id} failed with a permanent error "
                                 f"on attempt {attempt}/{max_attempts}, not retrying: {e}")
                    return RetryExhausted(e, attempt, permanent=True)
                except Exception as e:
                    if attempt >= max_attempts:
                        logger.error(f"Operation {operation_id} failed permanently after "
                                     f"{attempt} attempts: {e}")
                        return RetryExhausted(e, attempt)

                    delay = self.policy.delay_for(attempt)
                    self._in_flight[operation_id] = RetryAttempt(
                        operation_id=operation_id,
                        attempt=attempt,
                        last_error=e,
                        next_retry_at=self._clock() + timedelta(seconds=delay),
                    )
                    logger.warning(f"Operation {operation_id} failed (attempt {attempt}/{max_attempts}), "
                                   f"retrying in {delay}s: {e}")
                    await self._sleep(delay)
                else:
                    if attempt > 1:
                        logger.debug(f"Operation {operation_id} succeeded on attempt {attempt}")
                    return RetrySuccess(value, attempt)
        finally:
            self._in_flight.pop(operation_id, None)

    def in_flight(self) -> List[RetryAttempt]:
        """Snapshot of operations currently waiting between attempts"""
        return list(self._in_flight.values())
