"""Scheduler service for billing cron jobs using APScheduler."""
import logging
import os
import multiprocessing
from datetime import datetime, timedelta
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import redis.asyncio as redis

from app.config import settings
from app.database import AsyncSessionLocal
from app.services import payouts, sweeps
from app.services.gateway import RazorpayGateway
from app.services.webhook_outbox import replay_due_events

logger = logging.getLogger(__name__)

# Initialize scheduler
scheduler = AsyncIOScheduler()

# Redis client for distributed locking
redis_client = None


async def get_redis_client():
    """Get or create Redis client."""
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return redis_client


async def acquire_lock(lock_name: str, timeout: int = 300) -> bool:
    """
    Acquire a distributed lock using Redis.

    Args:
        lock_name: Name of the lock
        timeout: Lock timeout in seconds

    Returns:
        True if lock acquired, False otherwise
    """
    try:
        client = await get_redis_client()
        # Use SET with NX (only set if not exists) and EX (expiry)
        result = await client.set(f"billing:lock:{lock_name}", "1", nx=True, ex=timeout)
        return result is not None
    except Exception as e:
        logger.error(f"Failed to acquire lock {lock_name}: {e}")
        return False


async def release_lock(lock_name: str):
    """Release a distributed lock."""
    try:
        client = await get_redis_client()
        await client.delete(f"billing:lock:{lock_name}")
    except Exception as e:
        logger.error(f"Failed to release lock {lock_name}: {e}")


async def retry_failed_payments():
    """Retry suspended/pending subscriptions that are due another attempt."""
    lock_name = "retry_failed_payments"

    if not await acquire_lock(lock_name):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running retry_failed_payments job")
        async with AsyncSessionLocal() as session:
            await sweeps.run_payment_retry_sweep(session, RazorpayGateway())
    except Exception as e:
        logger.error(f"Error in retry_failed_payments: {e}", exc_info=True)
    finally:
        await release_lock(lock_name)


async def expire_lapsed_subscriptions():
    """Expire subscriptions past their paid period and enforce grace deadlines."""
    lock_name = "expire_lapsed_subscriptions"

    if not await acquire_lock(lock_name):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running expire_lapsed_subscriptions job")
        async with AsyncSessionLocal() as session:
            now = datetime.utcnow()
            await sweeps.run_expiry_sweep(session, now)
            await sweeps.run_grace_period_sweep(session, now)
            await sweeps.purge_stale_checkouts(session, now)
    except Exception as e:
        logger.error(f"Error in expire_lapsed_subscriptions: {e}", exc_info=True)
    finally:
        await release_lock(lock_name)


async def replay_webhook_events():
    """Re-run stored webhook events that failed or were never processed."""
    lock_name = "replay_webhook_events"

    if not await acquire_lock(lock_name, timeout=settings.WEBHOOK_REPLAY_INTERVAL_SECONDS):
        logger.debug(f"Skipping {lock_name} - another instance is running")
        return

    try:
        await replay_due_events(AsyncSessionLocal)
    except Exception as e:
        logger.error(f"Error in replay_webhook_events: {e}", exc_info=True)
    finally:
        await release_lock(lock_name)


async def process_monthly_payouts():
    """Transfer last month's analyst payouts."""
    lock_name = "process_monthly_payouts"

    if not await acquire_lock(lock_name, timeout=3600):
        logger.info(f"Skipping {lock_name} - another instance is running")
        return

    try:
        logger.info("Running process_monthly_payouts job")
        async with AsyncSessionLocal() as session:
            await payouts.run_monthly_payouts(session, RazorpayGateway())
    except Exception as e:
        logger.error(f"Error in process_monthly_payouts: {e}", exc_info=True)
    finally:
        await release_lock(lock_name)


def start_scheduler():
    """Start the APScheduler with all billing jobs."""
    # When uvicorn runs with --workers, only SpawnProcess-1 runs the scheduler;
    # the Redis locks cover any other host running the same jobs.
    current_pid = os.getpid()
    current_process_name = multiprocessing.current_process().name

    if current_process_name not in ("SpawnProcess-1", "MainProcess"):
        logger.info(f"Skipping scheduler on {current_process_name} (PID: {current_pid}) - scheduler only runs on SpawnProcess-1")
        return

    logger.info(f"Starting scheduler on {current_process_name} (PID: {current_pid})...")

    # Job 1: Webhook outbox replay
    scheduler.add_job(
        replay_webhook_events,
        trigger=IntervalTrigger(seconds=settings.WEBHOOK_REPLAY_INTERVAL_SECONDS),
        id="replay_webhook_events",
        name="Replay webhook events",
        replace_existing=True
    )

    # Job 2: Payment retry sweep (staggered: starts at +2 min)
    scheduler.add_job(
        retry_failed_payments,
        trigger=IntervalTrigger(
            minutes=settings.SCHEDULER_INTERVAL_MINUTES,
            start_date=datetime.utcnow() + timedelta(minutes=2),
        ),
        id="retry_failed_payments",
        name="Retry failed payments",
        replace_existing=True
    )

    # Job 3: Expiry and grace period sweep (staggered: starts at +5 min)
    scheduler.add_job(
        expire_lapsed_subscriptions,
        trigger=IntervalTrigger(
            minutes=settings.SCHEDULER_INTERVAL_MINUTES,
            start_date=datetime.utcnow() + timedelta(minutes=5),
        ),
        id="expire_lapsed_subscriptions",
        name="Expire lapsed subscriptions",
        replace_existing=True
    )

    # Job 4: Analyst payouts on the 1st of each month at 02:00 UTC
    scheduler.add_job(
        process_monthly_payouts,
        trigger=CronTrigger(day=1, hour=2, minute=0),
        id="process_monthly_payouts",
        name="Process monthly payouts",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Scheduler started with 4 billing jobs")


def stop_scheduler():
    """Stop the APScheduler."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
    else:
        logger.info("Scheduler was not running")
