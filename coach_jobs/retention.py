"""
Retention policies for terminal job records.

The dispatcher keeps finished jobs around so callers can poll their status.
These policies decide when a terminal record may be pruned:
- Once its terminal status has been read by a caller
- Time-based cleanup (after N seconds in the terminal state)
- Count-based cleanup (keep the newest N records)
- No automatic cleanup
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RetentionTrigger(Enum):
    """Retention policy trigger types"""
    AFTER_READ = "after_read"    # Prune once the terminal status was polled
    TIME_BASED = "time_based"    # Prune after X seconds
    COUNT_BASED = "count_based"  # Keep only the newest N records
    NEVER = "never"              # No automatic cleanup


@dataclass
class RetentionPolicy:
    """Configuration for a retention policy"""
    trigger: RetentionTrigger
    seconds: Optional[float] = None      # For TIME_BASED policies
    keep_count: Optional[int] = None     # For COUNT_BASED policies

    @classmethod
    def after_read(cls) -> 'RetentionPolicy':
        """Prune as soon as a caller has seen the terminal status"""
        return cls(RetentionTrigger.AFTER_READ)

    @classmethod
    def after_seconds(cls, seconds: float) -> 'RetentionPolicy':
        """Prune records older than N seconds in this state"""
        if seconds < 0:
            raise ValueError("seconds must be non-negative")
        return cls(RetentionTrigger.TIME_BASED, seconds=seconds)

    @classmethod
    def keep_last(cls, count: int) -> 'RetentionPolicy':
        """Keep only the last N records in this state"""
        if count < 0:
            raise ValueError("count must be non-negative")
        return cls(RetentionTrigger.COUNT_BASED, keep_count=count)

    @classmethod
    def never(cls) -> 'RetentionPolicy':
        """Never automatically prune records in this state"""
        return cls(RetentionTrigger.NEVER)


@dataclass
class RetentionConfig:
    """Retention configuration for the dispatcher's job table"""
    succeeded: RetentionPolicy = None    # Will default to after_seconds(3600)
    failed: RetentionPolicy = None       # Will default to after_seconds(86400)
    cancelled: RetentionPolicy = None    # Will default to after_seconds(86400)
    interval_seconds: float = 60.0       # How often the prune loop runs

    def __post_init__(self):
        if self.succeeded is None:
            self.succeeded = RetentionPolicy.after_seconds(3600)
        if self.failed is None:
            self.failed = RetentionPolicy.after_seconds(86400)
        if self.cancelled is None:
            self.cancelled = RetentionPolicy.after_seconds(86400)

    def policy_for(self, state) -> RetentionPolicy:
        return getattr(self, state.value)
