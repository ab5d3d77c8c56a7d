import asyncio
import asyncpg
import random
from datetime import datetime, timedelta, UTC
from coach_jobs import CoachJobs, InMemoryStore, PostgresStore, Settings, CheckInLockedError
import logging

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def fake_generator(owner_id: str, language: str, duration_days: int, plan_type: str):
    logger.info(f"Generating {plan_type} for {owner_id} ({language}, {duration_days} days)...")
    await asyncio.sleep(random.uniform(1, 3))
    if random.random() < 0.2:
        raise RuntimeError("Model overloaded")
    return {"owner_id": owner_id, "plan_type": plan_type, "days": duration_days}


class LoggingNotifier:
    async def send_push(self, subscriber_id: str, message: str):
        if random.random() < 0.3:
            raise ConnectionError("Push gateway timeout")
        logger.info(f"PUSH -> {subscriber_id}: {message}")

    async def send_email_fallback(self, owner_id: str, template: str):
        logger.info(f"EMAIL -> {owner_id}: {template}")


async def create_store(settings: Settings):
    if not settings.database_dsn:
        store = InMemoryStore(default_cooldown_days=settings.default_cooldown_days)
        for n in range(1, 5):
            store.set_push_subscription(f"user-{n}", f"sub-{n}")
        # user-4 checked in recently and is still locked
        store.record_check_in("user-4", datetime.now(UTC) - timedelta(days=10))
        return store, None

    pool = await asyncpg.create_pool(settings.database_dsn)
    store = PostgresStore(pool, default_cooldown_days=settings.default_cooldown_days)
    await store.initialize_db()
    return store, pool


async def main():
    settings = Settings.from_env()
    store, pool = await create_store(settings)
    coach = CoachJobs(store, fake_generator, LoggingNotifier(), settings)

    try:
        logger.info("Starting coach jobs...")
        await coach.start()

        job_ids = []
        for n in range(1, 5):
            owner_id = f"user-{n}"
            try:
                job_ids.extend(await coach.submit_generation(owner_id, "en"))
            except CheckInLockedError as e:
                logger.info(f"{owner_id} rejected: {e}")

        logger.info(f"Submitted {len(job_ids)} jobs: {coach.dispatcher.stats()}")

        await coach.schedule_reminder("user-1", "09:00")
        for entry in coach.list_reminders():
            logger.info(f"Reminder {entry.name} next runs at {entry.next_run().isoformat()}")

        for job_id in job_ids:
            status = await coach.dispatcher.wait(job_id)
            logger.info(f"Job {job_id}: {status.state} {status.error or ''}")

        # Let completion notifications finish
        await asyncio.sleep(5)

    except KeyboardInterrupt:
        logger.info("\nShutting down...")
    finally:
        await coach.shutdown()
        if pool:
            await pool.close()

if __name__ == "__main__":
    asyncio.run(main())
