"""Periodic billing sweeps.

Each sweep takes a session, a gateway where needed and the current
time, so the scheduler and tests drive them the same way.
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.subscription import Subscription
from app.services import subscription_state as sm
from app.services.exceptions import GatewayError
from app.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)


async def run_payment_retry_sweep(
    db: AsyncSession,
    gateway: PaymentGateway,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """
    Ask the gateway to retry subscriptions that are behind on payment.

    Only suspended/pending rows below the retry ceiling whose last attempt
    is at least PAYMENT_RETRY_INTERVAL_HOURS old are picked. A suspended
    row with no failure behind it was paused by its owner and is skipped.
    Gateway errors are logged and left for the next run.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(hours=settings.PAYMENT_RETRY_INTERVAL_HOURS)
    result = await db.execute(
        Subscription.live()
        .where(
            Subscription.status.in_((sm.SUSPENDED, sm.PENDING)),
            Subscription.payment_retry_count < settings.MAX_PAYMENT_RETRIES,
            Subscription.razorpay_subscription_id.is_not(None),
            or_(
                Subscription.status == sm.PENDING,
                Subscription.payment_retry_count > 0,
                Subscription.grace_period_ends_at.is_not(None),
            ),
            func.coalesce(Subscription.last_payment_attempt, Subscription.created_at) <= cutoff,
        )
        .with_for_update(skip_locked=True)
    )
    due = result.scalars().all()

    retried = failed = 0
    for subscription in due:
        try:
            await gateway.retry_payment(subscription.razorpay_subscription_id)
        except GatewayError as e:
            failed += 1
            logger.warning(f"Payment retry for subscription {subscription.uuid} failed: {e.message}")
            continue
        subscription.last_payment_attempt = now
        retried += 1

    await db.commit()
    logger.info(f"Payment retry sweep: {len(due)} due, {retried} retried, {failed} gateway errors")
    return {"due": len(due), "retried": retried, "failed": failed}


async def run_expiry_sweep(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Expire active subscriptions whose paid period ended without a renewal.

    Rows with a grace deadline are left to the grace period sweep; the
    gateway keeps retrying them until that deadline.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        Subscription.live()
        .where(
            Subscription.status == sm.ACTIVE,
            Subscription.expires_at.is_not(None),
            Subscription.expires_at < now,
            Subscription.grace_period_ends_at.is_(None),
        )
        .with_for_update(skip_locked=True)
    )
    lapsed = result.scalars().all()

    for subscription in lapsed:
        transition = sm.expire(subscription, now)
        logger.warning(f"Subscription {subscription.uuid} lapsed at {subscription.expires_at}: -> {transition.current}")

    await db.commit()
    logger.info(f"Expiry sweep: {len(lapsed)} subscriptions ended")
    return {"expired": len(lapsed)}


async def run_grace_period_sweep(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Enforce the grace deadline set by the first payment failure.

    Active subscriptions past the deadline are suspended and stop
    retrying; suspended ones past the deadline end.
    """
    now = now or datetime.utcnow()
    result = await db.execute(
        Subscription.live()
        .where(
            Subscription.status.in_((sm.ACTIVE, sm.SUSPENDED)),
            Subscription.grace_period_ends_at.is_not(None),
            Subscription.grace_period_ends_at < now,
        )
        .with_for_update(skip_locked=True)
    )
    overdue = result.scalars().all()

    suspended = ended = 0
    for subscription in overdue:
        if subscription.status == sm.ACTIVE:
            sm.force_suspend(subscription, now)
            suspended += 1
            logger.warning(f"Subscription {subscription.uuid} suspended: grace period ended unpaid")
        else:
            transition = sm.expire(subscription, now)
            ended += 1
            logger.warning(f"Subscription {subscription.uuid} ended after grace period: -> {transition.current}")

    await db.commit()
    logger.info(f"Grace period sweep: {suspended} suspended, {ended} ended")
    return {"suspended": suspended, "ended": ended}


async def purge_stale_checkouts(db: AsyncSession, now: Optional[datetime] = None, days: int = 30) -> Dict[str, int]:
    """Tombstone checkouts that were never paid and never retried for `days`."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(days=days)
    result = await db.execute(
        Subscription.live().where(
            Subscription.status == sm.PENDING,
            Subscription.cycles_billed == 0,
            Subscription.created_at < cutoff,
            or_(Subscription.last_payment_attempt.is_(None), Subscription.last_payment_attempt < cutoff),
        )
    )
    stale = result.scalars().all()
    for subscription in stale:
        subscription.is_deleted = True
        subscription.deleted_at = now
    await db.commit()
    if stale:
        logger.info(f"Tombstoned {len(stale)} unpaid checkouts older than {days} days")
    return {"purged": len(stale)}
