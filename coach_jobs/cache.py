"""
Read-through TTL cache with single-flight misses.

Used for rarely changing lookups (FAQ content, pricing) whose producers may
be expensive or externally rate-limited: concurrent misses on the same key
share one producer call.
"""

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    key: Hashable
    value: Any
    expires_at: float


class TTLCache:
    def __init__(self, ttl: float, *, name: str = "cache", clock: Callable[[], float] = time.monotonic):
        """
        Args:
            ttl: Seconds a produced value stays fresh
            name: Label used in log messages (e.g. "faqs-v1")
            clock: Monotonic clock in seconds
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: Dict[Hashable, CacheEntry] = {}
        self._inflight: Dict[Hashable, asyncio.Task] = {}

    async def fetch(self, key: Hashable, producer: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Return the cached value for ``key``, producing it on a miss.

        ``producer(*args, **kwargs)`` runs at most once per miss no matter
        how many callers are waiting on the key. The producer runs in its own
        task, so a cancelled caller never cancels it for the others and the
        value is still stored. A producer error reaches every waiter and
        nothing is cached.
        """
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > self._clock():
            return entry.value

        task = self._inflight.get(key)
        if task is None:
            logger.debug(f"Cache {self.name} miss for {key!r}, producing")
            task = asyncio.create_task(self._produce(key, producer, args, kwargs))
            task.add_done_callback(self._retrieve_error)
            self._inflight[key] = task

        # Shield so a cancelled caller doesn't cancel the shared producer
        return await asyncio.shield(task)

    async def _produce(self, key: Hashable, producer: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        try:
            value = producer(*args, **kwargs)
            if inspect.isawaitable(value):
                value = await value
        except Exception as e:
            logger.warning(f"Cache {self.name} producer failed for {key!r}: {e}")
            raise
        else:
            self._entries[key] = CacheEntry(key, value, self._clock() + self.ttl)
            return value
        finally:
            self._inflight.pop(key, None)

    @staticmethod
    def _retrieve_error(task: asyncio.Task) -> None:
        # Mark the error retrieved even when every waiter has gone away
        if not task.cancelled():
            task.exception()

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.expires_at > self._clock()

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for entry in self._entries.values() if entry.expires_at > now)
