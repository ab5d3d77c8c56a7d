"""
Persistence collaborators.

The orchestration layer only reads a handful of facts (last check-in, plan
start date, cooldown, push subscription, cached lookups) and persists
schedule entries. ``Store`` is the interface; ``InMemoryStore`` backs tests
and local runs, ``PostgresStore`` reads the coaching database through an
asyncpg pool.
"""

import datetime
import json
import logging
from collections import defaultdict
from datetime import UTC
from typing import Any, Dict, List, Optional, Protocol

import asyncpg

from .retry import Retrier, RetryPolicy
from .schedule_entry import ScheduleEntry

logger = logging.getLogger(__name__)

COOLDOWN_CONFIG_KEY = "check_in_frequency_days"
PRICING_CONFIG_KEY = "pricing"
DEFAULT_COOLDOWN_DAYS = 14


class Store(Protocol):
    async def read_last_check_in(self, owner_id: str) -> Optional[datetime.datetime]: ...

    async def read_cooldown_days(self) -> int: ...

    async def read_plan_start_date(self, owner_id: str) -> Optional[datetime.datetime]: ...

    async def read_plan_creation_times(self, owner_id: str, since: datetime.datetime) -> List[datetime.datetime]: ...

    async def read_push_subscription(self, owner_id: str) -> Optional[str]: ...

    async def read_faqs(self, language: str) -> List[Dict[str, Any]]: ...

    async def read_pricing(self) -> Dict[str, Any]: ...

    async def save_schedule_entry(self, entry: ScheduleEntry) -> None: ...

    async def delete_schedule_entry(self, name: str) -> None: ...

    async def load_schedule_entries(self) -> List[ScheduleEntry]: ...


class InMemoryStore:
    """Dict-backed Store, plus writers for seeding data"""

    def __init__(self, default_cooldown_days: int = DEFAULT_COOLDOWN_DAYS):
        self.default_cooldown_days = default_cooldown_days
        self.config: Dict[str, Any] = {}
        self.check_ins: Dict[str, List[datetime.datetime]] = defaultdict(list)
        self.plans: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.push_subscriptions: Dict[str, Dict[str, Any]] = {}
        self.faqs: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.schedule_entries: Dict[str, ScheduleEntry] = {}

    # Seeding helpers

    def record_check_in(self, owner_id: str, at: datetime.datetime):
        self.check_ins[owner_id].append(at)

    def record_plan(self, owner_id: str, plan_type: str, start_date: datetime.datetime,
                    created_at: Optional[datetime.datetime] = None):
        self.plans[owner_id].append({
            "plan_type": plan_type,
            "start_date": start_date,
            "created_at": created_at or start_date,
        })

    def set_push_subscription(self, owner_id: str, subscription_id: str, active: bool = True):
        self.push_subscriptions[owner_id] = {"subscription_id": subscription_id, "is_active": active}

    # Store interface

    async def read_last_check_in(self, owner_id):
        times = self.check_ins.get(owner_id)
        return max(times) if times else None

    async def read_cooldown_days(self):
        return self.config.get(COOLDOWN_CONFIG_KEY, self.default_cooldown_days)

    async def read_plan_start_date(self, owner_id):
        plans = self.plans.get(owner_id)
        if not plans:
            return None
        return max(plans, key=lambda plan: plan["created_at"])["start_date"]

    async def read_plan_creation_times(self, owner_id, since):
        return [plan["created_at"] for plan in self.plans.get(owner_id, []) if plan["created_at"] >= since]

    async def read_push_subscription(self, owner_id):
        subscription = self.push_subscriptions.get(owner_id)
        if not subscription or not subscription["is_active"]:
            return None
        return subscription["subscription_id"]

    async def read_faqs(self, language):
        return list(self.faqs.get(language, []))

    async def read_pricing(self):
        return dict(self.config.get(PRICING_CONFIG_KEY, {}))

    async def save_schedule_entry(self, entry):
        self.schedule_entries[entry.name] = entry

    async def delete_schedule_entry(self, name):
        self.schedule_entries.pop(name, None)

    async def load_schedule_entries(self):
        return list(self.schedule_entries.values())


class PostgresStore:
    def __init__(self,
                 db_pool: asyncpg.Pool,
                 *,
                 retrier: Optional[Retrier] = None,
                 default_cooldown_days: int = DEFAULT_COOLDOWN_DAYS):
        """
        Args:
            db_pool: asyncpg connection pool for the coaching database
            retrier: Retries transient query failures (defaults to 3 attempts, 0.1s, 0.2s)
            default_cooldown_days: Used when system_config has no cooldown row
        """
        self.db_pool = db_pool
        self.retrier = retrier or Retrier(RetryPolicy(initial_backoff=0.1, base=2, max_attempts=3))
        self.default_cooldown_days = default_cooldown_days

    async def initialize_db(self):
        """Create the tables this store reads and writes if they don't exist"""
        await self._fetch("""
            CREATE TABLE IF NOT EXISTS system_config (
                key TEXT PRIMARY KEY,
                value JSONB NOT NULL
            );
        """)

        await self._fetch("""
            CREATE TABLE IF NOT EXISTS check_ins (
                id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
        """)

        await self._fetch("""
            CREATE TABLE IF NOT EXISTS plans (
                id BIGSERIAL PRIMARY KEY,
                user_id TEXT NOT NULL,
                plan_type TEXT NOT NULL,
                start_date TIMESTAMPTZ NOT NULL,
                created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
            );
        """)

        await self._fetch("""
            CREATE TABLE IF NOT EXISTS push_subscriptions (
                user_id TEXT PRIMARY KEY,
                subscription_id TEXT NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE
            );
        """)

        await self._fetch("""
            CREATE TABLE IF NOT EXISTS faqs (
                id BIGSERIAL PRIMARY KEY,
                language TEXT NOT NULL,
                question TEXT NOT NULL,
                answer TEXT NOT NULL,
                sort_order INTEGER NOT NULL DEFAULT 0
            );
        """)

        await self._fetch("""
            CREATE TABLE IF NOT EXISTS schedule_entries (
                name TEXT PRIMARY KEY,
                cron TEXT NOT NULL,
                job_type TEXT NOT NULL,
                payload JSONB NOT NULL DEFAULT '{}'::jsonb,
                enabled BOOLEAN NOT NULL DEFAULT TRUE,
                created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
                last_fired_at TIMESTAMPTZ
            );
        """)

        await self._fetch("""
            CREATE INDEX IF NOT EXISTS idx_check_ins_user_created
            ON check_ins(user_id, created_at DESC);
        """)

        await self._fetch("""
            CREATE INDEX IF NOT EXISTS idx_plans_user_created
            ON plans(user_id, created_at DESC);
        """)

        logger.debug("Database initialized")

    async def _fetch(self, query: str, *args) -> List[asyncpg.Record]:
        """Run a query, retrying transient failures; raises the last error on exhaustion"""
        result = await self.retrier.run(self.db_pool.fetch, query, *args)
        if not result.ok:
            raise result.last_error
        return result.value

    async def read_last_check_in(self, owner_id):
        rows = await self._fetch("""
            SELECT MAX(created_at) AS last_check_in FROM check_ins WHERE user_id = $1;
        """, owner_id)
        return rows[0]['last_check_in'] if rows else None

    async def read_cooldown_days(self):
        rows = await self._fetch("""
            SELECT value FROM system_config WHERE key = $1;
        """, COOLDOWN_CONFIG_KEY)
        if not rows:
            return self.default_cooldown_days
        return int(json.loads(rows[0]['value']))

    async def read_plan_start_date(self, owner_id):
        rows = await self._fetch("""
            SELECT start_date FROM plans
            WHERE user_id = $1
            ORDER BY created_at DESC
            LIMIT 1;
        """, owner_id)
        return rows[0]['start_date'] if rows else None

    async def read_plan_creation_times(self, owner_id, since):
        rows = await self._fetch("""
            SELECT created_at FROM plans
            WHERE user_id = $1 AND created_at >= $2
            ORDER BY created_at;
        """, owner_id, since)
        return [row['created_at'] for row in rows]

    async def read_push_subscription(self, owner_id):
        rows = await self._fetch("""
            SELECT subscription_id FROM push_subscriptions
            WHERE user_id = $1 AND is_active;
        """, owner_id)
        return rows[0]['subscription_id'] if rows else None

    async def read_faqs(self, language):
        rows = await self._fetch("""
            SELECT question, answer FROM faqs
            WHERE language = $1
            ORDER BY sort_order, id;
        """, language)
        return [dict(row) for row in rows]

    async def read_pricing(self):
        rows = await self._fetch("""
            SELECT value FROM system_config WHERE key = $1;
        """, PRICING_CONFIG_KEY)
        return json.loads(rows[0]['value']) if rows else {}

    async def save_schedule_entry(self, entry):
        await self._fetch("""
            INSERT INTO schedule_entries (name, cron, job_type, payload, enabled, created_at, last_fired_at)
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7)
            ON CONFLICT (name) DO UPDATE SET
                cron = EXCLUDED.cron,
                job_type = EXCLUDED.job_type,
                payload = EXCLUDED.payload,
                enabled = EXCLUDED.enabled,
                created_at = EXCLUDED.created_at,
                last_fired_at = EXCLUDED.last_fired_at;
        """, entry.name, entry.cron, entry.job_type, json.dumps(entry.payload),
            entry.enabled, entry.created_at, entry.last_fired_at)

    async def delete_schedule_entry(self, name):
        await self._fetch("""
            DELETE FROM schedule_entries WHERE name = $1;
        """, name)

    async def load_schedule_entries(self):
        rows = await self._fetch("""
            SELECT name, cron, job_type, payload, enabled, created_at, last_fired_at
            FROM schedule_entries
            ORDER BY name;
        """)
        entries = []
        for row in rows:
            try:
                entries.append(ScheduleEntry(
                    name=row['name'],
                    cron=row['cron'],
                    job_type=row['job_type'],
                    payload=json.loads(row['payload']),
                    enabled=row['enabled'],
                    created_at=row['created_at'] or datetime.datetime.now(UTC),
                    last_fired_at=row['last_fired_at'],
                ))
            except ValueError as e:
                logger.warning(f"Skipping invalid schedule entry {row['name']}: {e}")
        return entries
