"""
Runtime settings for the coach_jobs orchestration layer.

Every component also takes these values as plain constructor arguments;
``Settings`` only bundles the defaults and reads overrides from the
environment.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class Settings:
    """
    Tunables for the dispatcher, retrier, caches and eligibility gate.

    Args:
        max_parallelism: Maximum number of generation jobs running at once
        max_queue_depth: Reject submissions past this queue depth (None = unbounded)
        retry_initial_backoff: Seconds to wait before the first retry
        retry_base: Multiplier applied to the backoff on each further retry
        retry_max_attempts: Total attempts (first try included) before giving up
        faq_cache_ttl: Seconds an FAQ lookup stays cached
        pricing_cache_ttl: Seconds a pricing lookup stays cached
        default_cooldown_days: Cooldown used when the store has none configured
        generation_limit: Plans an owner may generate per cooldown window
        database_dsn: PostgreSQL DSN for PostgresStore (None = in-memory only)
    """
    max_parallelism: int = 5
    max_queue_depth: Optional[int] = None
    retry_initial_backoff: float = 1.0
    retry_base: float = 2.0
    retry_max_attempts: int = 3
    faq_cache_ttl: float = 60 * 60
    pricing_cache_ttl: float = 30 * 60
    default_cooldown_days: int = 14
    generation_limit: int = 2
    database_dsn: Optional[str] = None

    def __post_init__(self):
        if self.max_parallelism < 1:
            raise ValueError("max_parallelism must be positive")
        if self.max_queue_depth is not None and self.max_queue_depth < 0:
            raise ValueError("max_queue_depth must be non-negative")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be at least 1")

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from ``COACH_JOBS_*`` environment variables"""
        return cls(
            max_parallelism=_env_int("COACH_JOBS_MAX_PARALLELISM", 5),
            max_queue_depth=_env_int("COACH_JOBS_MAX_QUEUE_DEPTH", None),
            retry_initial_backoff=_env_float("COACH_JOBS_RETRY_INITIAL_BACKOFF", 1.0),
            retry_base=_env_float("COACH_JOBS_RETRY_BASE", 2.0),
            retry_max_attempts=_env_int("COACH_JOBS_RETRY_MAX_ATTEMPTS", 3),
            faq_cache_ttl=_env_float("COACH_JOBS_FAQ_CACHE_TTL", 60 * 60),
            pricing_cache_ttl=_env_float("COACH_JOBS_PRICING_CACHE_TTL", 30 * 60),
            default_cooldown_days=_env_int("COACH_JOBS_DEFAULT_COOLDOWN_DAYS", 14),
            generation_limit=_env_int("COACH_JOBS_GENERATION_LIMIT", 2),
            database_dsn=os.getenv("COACH_JOBS_DATABASE_DSN") or None,
        )
