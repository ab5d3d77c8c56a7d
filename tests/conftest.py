"""
Pytest configuration and fixtures for coach_jobs tests.
"""

import asyncio
import os
from datetime import UTC, datetime, timedelta
from typing import AsyncGenerator

import asyncpg
import pytest

from coach_jobs import InMemoryStore, RetentionConfig, RetentionPolicy, WorkDispatcher


# Database connection parameters from environment
DB_HOST = os.getenv("PGHOST", "localhost")
DB_PORT = int(os.getenv("PGPORT", "5432"))
DB_USER = os.getenv("PGUSER", "coach")
DB_PASSWORD = os.getenv("PGPASSWORD", "coach123")
DB_NAME = os.getenv("PGDATABASE", "coach_db")

TEST_TABLES = ("system_config", "check_ins", "plans", "push_subscriptions", "faqs", "schedule_entries")


@pytest.fixture
async def db_pool() -> AsyncGenerator[asyncpg.Pool, None]:
    """Connection pool for PostgreSQL tests; skips when no database is reachable."""
    try:
        pool = await asyncio.wait_for(asyncpg.create_pool(
            host=DB_HOST,
            port=DB_PORT,
            user=DB_USER,
            password=DB_PASSWORD,
            database=DB_NAME,
            min_size=1,
            max_size=5,
        ), timeout=5)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as e:
        pytest.skip(f"PostgreSQL not available: {e}")
    yield pool
    await pool.close()


@pytest.fixture
async def clean_db(db_pool: asyncpg.Pool) -> AsyncGenerator[asyncpg.Pool, None]:
    """Drops the store's tables before and after each test."""
    for table in TEST_TABLES:
        await db_pool.execute(f"DROP TABLE IF EXISTS {table} CASCADE")

    yield db_pool

    for table in TEST_TABLES:
        await db_pool.execute(f"DROP TABLE IF EXISTS {table} CASCADE")


@pytest.fixture
async def dispatcher() -> AsyncGenerator[WorkDispatcher, None]:
    """A started dispatcher with a pool of 5 and records kept forever."""
    retention = RetentionConfig(
        succeeded=RetentionPolicy.never(),
        failed=RetentionPolicy.never(),
        cancelled=RetentionPolicy.never(),
    )
    disp = WorkDispatcher(max_parallelism=5, retention=retention, retention_enabled=False)
    await disp.start()

    yield disp

    await disp.shutdown(timeout=1)


@pytest.fixture
def store():
    return InMemoryStore()


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays without waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


class ManualClock:
    """Clock that only moves when told to. Works as a monotonic or a UTC clock."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, amount):
        self.now = self.now + amount


@pytest.fixture
def monotonic_clock():
    return ManualClock(1000.0)


@pytest.fixture
def utc_clock():
    return ManualClock(datetime(2025, 3, 3, 8, 0, tzinfo=UTC))


class Gate:
    """Lets tests hold job handlers open until released."""

    def __init__(self):
        self.entered = []
        self._events = {}

    def event(self, name):
        return self._events.setdefault(name, asyncio.Event())

    async def wait(self, name):
        self.entered.append(name)
        await self.event(name).wait()

    def release(self, name):
        self.event(name).set()

    def release_all(self):
        for event in self._events.values():
            event.set()


@pytest.fixture
def gate():
    g = Gate()
    yield g
    g.release_all()


async def _wait_until(predicate, timeout: float = 2.0):
    """Poll until predicate() is true, yielding to the event loop in between."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met within timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def time_utils():
    """Utility functions for time manipulation in tests."""
    class TimeUtils:
        @staticmethod
        def days_ago(days: float, now: datetime):
            return now - timedelta(days=days)

        @staticmethod
        def days_ahead(days: float, now: datetime):
            return now + timedelta(days=days)

    return TimeUtils()


@pytest.fixture
def wait_until():
    return _wait_until
