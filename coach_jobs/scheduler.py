"""
Per-entity dynamic cron scheduling.

The scheduler keeps at most one entry per name (e.g. one daily reminder per
user). Registering a name that already exists replaces the old entry
atomically. A single loop wakes at each minute boundary and evaluates one
tick; matching entries are handed to the WorkDispatcher (or spawned as
direct tasks) so a slow job can never delay the next tick.

Features:
- Five-field cron specs via croniter, always in UTC
- Replace-by-name registration, no-op cancellation of unknown names
- No backfill: minutes missed while offline are skipped
- Optional persistence of entries through a Store
"""

import asyncio
import datetime
import inspect
import logging
from datetime import UTC, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Set

from .schedule_entry import ScheduleEntry, floor_minute

if TYPE_CHECKING:
    from .dispatcher import WorkDispatcher
    from .store import Store

logger = logging.getLogger(__name__)


class DynamicScheduler:
    def __init__(self,
                 dispatcher: Optional['WorkDispatcher'] = None,
                 *,
                 store: Optional['Store'] = None,
                 direct_handlers: Optional[Dict[str, Callable]] = None,
                 clock: Optional[Callable[[], datetime.datetime]] = None):
        """
        Args:
            dispatcher: Receives fired jobs whose type has no direct handler
            store: Persists entries so they survive restarts (optional)
            direct_handlers: job_type -> async function run as a detached task
                             instead of going through the dispatcher pool
            clock: Returns the current UTC time
        """
        self.dispatcher = dispatcher
        self.store = store
        self._clock = clock or (lambda: datetime.datetime.now(UTC))
        self._direct_handlers: Dict[str, Callable] = {}
        for job_type, func in (direct_handlers or {}).items():
            self.add_direct_handler(job_type, func)

        self._entries: Dict[str, ScheduleEntry] = {}
        self._last_tick: Optional[datetime.datetime] = None

        self.is_running = False
        self.loop_task = None
        self.direct_tasks: Set[asyncio.Task] = set()

    def add_direct_handler(self, job_type: str, func: Callable):
        """Run ``job_type`` firings directly instead of through the dispatcher"""
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Expected an async function, got {type(func)}")
        self._direct_handlers[job_type] = func

    # Entry table

    async def register(self,
                       name: str,
                       cron: str,
                       job_type: str,
                       payload: Optional[Dict[str, Any]] = None,
                       *,
                       enabled: bool = True) -> ScheduleEntry:
        """
        Register (or replace) the recurring entry called ``name``.

        Raises:
            ValueError: The cron spec is invalid, or nothing can run ``job_type``
        """
        dispatchable = self.dispatcher is not None and self.dispatcher.handles(job_type)
        if job_type not in self._direct_handlers and not dispatchable:
            raise ValueError(f"No dispatcher or direct handler for job type '{job_type}'")

        entry = ScheduleEntry(
            name=name,
            cron=cron,
            job_type=job_type,
            payload=dict(payload or {}),
            enabled=enabled,
            created_at=self._clock(),
        )

        # Swap without an await in between so there is never a moment with two entries
        replaced = self._entries.pop(name, None)
        self._entries[name] = entry

        if replaced is not None:
            logger.debug(f"Replaced schedule entry {name}: '{replaced.cron}' -> '{cron}'")
        else:
            logger.debug(f"Registered schedule entry {name} ({cron}, job_type={job_type})")

        if self.store is not None:
            await self.store.save_schedule_entry(entry)
        return entry

    async def cancel(self, name: str) -> bool:
        """Remove the entry called ``name``. Unknown names are a no-op."""
        entry = self._entries.pop(name, None)
        if entry is None:
            return False

        logger.debug(f"Cancelled schedule entry {name}")
        if self.store is not None:
            await self.store.delete_schedule_entry(name)
        return True

    def get(self, name: str) -> Optional[ScheduleEntry]:
        return self._entries.get(name)

    def list(self) -> List[ScheduleEntry]:
        return [self._entries[name] for name in sorted(self._entries)]

    # Firing

    def tick(self, now: Optional[datetime.datetime] = None) -> List[str]:
        """
        Evaluate a single minute and fire every enabled entry that matches it.

        A minute that was already evaluated (or one earlier than it) fires
        nothing, so each matching minute fires at most once.

        Returns:
            list: Names of the entries that fired
        """
        minute = floor_minute(now or self._clock())
        if self._last_tick is not None and minute <= self._last_tick:
            return []
        self._last_tick = minute

        fired = []
        for entry in list(self._entries.values()):
            if not entry.enabled or not entry.matches(minute):
                continue
            try:
                self._fire(entry)
            except Exception as e:
                logger.error(f"Failed to fire schedule entry {entry.name}: {e}")
                continue
            entry.last_fired_at = minute
            fired.append(entry.name)

        if fired:
            logger.debug(f"Tick {minute.isoformat()} fired {len(fired)} entries")
        return fired

    def _fire(self, entry: ScheduleEntry):
        direct = self._direct_handlers.get(entry.job_type)
        if direct is not None:
            task = asyncio.create_task(self._run_direct(direct, entry))
            self.direct_tasks.add(task)
            task.add_done_callback(self.direct_tasks.discard)
        else:
            self.dispatcher.submit(entry.job_type, entry.payload)

    async def _run_direct(self, func: Callable, entry: ScheduleEntry):
        try:
            await func(**entry.payload)
        except Exception as e:
            logger.error(f"Scheduled job {entry.name} ({entry.job_type}) failed: {e}")

    # Lifecycle

    async def start(self):
        """Restore persisted entries and start the minute loop"""
        if self.is_running:
            return

        if self.store is not None:
            for entry in await self.store.load_schedule_entries():
                self._entries[entry.name] = entry
            logger.debug(f"Restored {len(self._entries)} schedule entries")

        self.is_running = True
        self.loop_task = asyncio.create_task(self._loop())
        logger.info(f"DynamicScheduler started with {len(self._entries)} entries")

    async def shutdown(self, timeout: float = 10):
        """Stop ticking; direct jobs already fired get ``timeout`` seconds to finish"""
        if not self.is_running:
            return

        self.is_running = False
        if self.loop_task and not self.loop_task.done():
            self.loop_task.cancel()
            await asyncio.gather(self.loop_task, return_exceptions=True)

        if self.direct_tasks:
            await asyncio.wait(set(self.direct_tasks), timeout=timeout)

        logger.debug("DynamicScheduler stopped")

    async def _loop(self):
        while self.is_running:
            try:
                # Land just past the boundary so the tick sees the new minute
                await asyncio.sleep(self._time_to_next_minute() + 0.01)
                self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")

    def _time_to_next_minute(self, time: Optional[datetime.datetime] = None) -> float:
        time = time or self._clock()
        next_minute = (time + timedelta(minutes=1)).replace(second=0, microsecond=0)

        return (next_minute - time).total_seconds()
