"""Tests for the scheduler's billing sweeps."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.models.subscription import Subscription
from app.services import sweeps
from app.services.exceptions import GatewayError

from conftest import make_subscription


async def _reload(db, subscription) -> Subscription:
    result = await db.execute(
        select(Subscription).where(Subscription.uuid == subscription.uuid).execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.mark.asyncio
async def test_retry_sweep_picks_only_due_subscriptions(test_db, trader, tier, gateway):
    now = datetime(2024, 3, 10, 12, 0)
    due = await make_subscription(test_db, trader, tier, status="suspended", gateway_id="sub_due",
                                  payment_retry_count=1, last_payment_attempt=now - timedelta(hours=25))
    await make_subscription(test_db, trader, tier, status="suspended", gateway_id="sub_recent",
                            payment_retry_count=1, last_payment_attempt=now - timedelta(hours=2))
    await make_subscription(test_db, trader, tier, status="suspended", gateway_id="sub_exhausted",
                            payment_retry_count=3, last_payment_attempt=now - timedelta(days=3))
    await make_subscription(test_db, trader, tier, status="active", gateway_id="sub_active",
                            last_payment_attempt=now - timedelta(days=3))
    await make_subscription(test_db, trader, tier, status="pending_payment", gateway_id="sub_deleted",
                            last_payment_attempt=now - timedelta(days=3), is_deleted=True)

    counts = await sweeps.run_payment_retry_sweep(test_db, gateway, now=now)

    assert counts == {"due": 1, "retried": 1, "failed": 0}
    assert gateway.called("retry_payment") == [("retry_payment", "sub_due")]
    assert (await _reload(test_db, due)).last_payment_attempt == now


@pytest.mark.asyncio
async def test_retry_sweep_never_retries_past_ceiling(test_db, trader, tier, gateway):
    now = datetime(2024, 3, 10)
    await make_subscription(test_db, trader, tier, status="suspended", payment_retry_count=3,
                            last_payment_attempt=now - timedelta(days=30))
    counts = await sweeps.run_payment_retry_sweep(test_db, gateway, now=now)
    assert counts["due"] == 0
    assert gateway.called("retry_payment") == []


@pytest.mark.asyncio
async def test_retry_sweep_survives_gateway_errors(test_db, trader, tier, gateway):
    now = datetime(2024, 3, 10)
    sub = await make_subscription(test_db, trader, tier, status="pending_payment",
                                  last_payment_attempt=now - timedelta(days=2))
    gateway.fail_with = GatewayError("Razorpay unavailable")

    counts = await sweeps.run_payment_retry_sweep(test_db, gateway, now=now)

    assert counts == {"due": 1, "retried": 0, "failed": 1}
    assert (await _reload(test_db, sub)).last_payment_attempt == now - timedelta(days=2)


@pytest.mark.asyncio
async def test_expiry_sweep(test_db, trader, tier):
    now = datetime(2024, 3, 16)
    lapsed = await make_subscription(test_db, trader, tier, status="active", gateway_id="sub_lapsed",
                                     cycles_billed=1, expires_at=datetime(2024, 3, 15))
    cancelling = await make_subscription(test_db, trader, tier, status="active", gateway_id="sub_cancel",
                                         cycles_billed=1, expires_at=datetime(2024, 3, 15),
                                         auto_renewal=False, cancelled_at=datetime(2024, 3, 1))
    current = await make_subscription(test_db, trader, tier, status="active", gateway_id="sub_current",
                                      cycles_billed=1, expires_at=datetime(2024, 4, 15))

    counts = await sweeps.run_expiry_sweep(test_db, now)

    assert counts == {"expired": 2}
    lapsed = await _reload(test_db, lapsed)
    assert lapsed.status == "expired"
    assert lapsed.auto_renewal is False
    assert (await _reload(test_db, cancelling)).status == "cancelled"
    assert (await _reload(test_db, current)).status == "active"


@pytest.mark.asyncio
async def test_retry_sweep_skips_paused_subscriptions(test_db, trader, tier, gateway):
    now = datetime(2024, 3, 10)
    await make_subscription(test_db, trader, tier, status="suspended", gateway_id="sub_paused",
                            cycles_billed=1, last_payment_attempt=now - timedelta(days=5),
                            suspended_at=now - timedelta(days=2))
    failing = await make_subscription(test_db, trader, tier, status="suspended", gateway_id="sub_failing",
                                      cycles_billed=1, payment_retry_count=2,
                                      last_payment_attempt=now - timedelta(days=2),
                                      grace_period_ends_at=now + timedelta(days=3))

    counts = await sweeps.run_payment_retry_sweep(test_db, gateway, now=now)

    assert counts == {"due": 1, "retried": 1, "failed": 0}
    assert gateway.called("retry_payment") == [("retry_payment", "sub_failing")]
    assert (await _reload(test_db, failing)).last_payment_attempt == now


@pytest.mark.asyncio
async def test_expiry_sweep_leaves_grace_period_to_grace_sweep(test_db, trader, tier):
    now = datetime(2024, 3, 16)
    in_grace = await make_subscription(test_db, trader, tier, status="active", gateway_id="sub_in_grace",
                                       cycles_billed=1, expires_at=datetime(2024, 3, 15), payment_retry_count=1,
                                       grace_period_ends_at=datetime(2024, 3, 22))

    counts = await sweeps.run_expiry_sweep(test_db, now)

    assert counts == {"expired": 0}
    assert (await _reload(test_db, in_grace)).status == "active"

    # Once the deadline passes the grace sweep suspends it, then ends it
    assert await sweeps.run_grace_period_sweep(test_db, datetime(2024, 3, 23)) == {"suspended": 1, "ended": 0}
    assert await sweeps.run_expiry_sweep(test_db, datetime(2024, 3, 23)) == {"expired": 0}
    assert await sweeps.run_grace_period_sweep(test_db, datetime(2024, 3, 23, 1)) == {"suspended": 0, "ended": 1}
    assert (await _reload(test_db, in_grace)).status == "expired"


@pytest.mark.asyncio
async def test_grace_sweep_suspends_then_ends(test_db, trader, tier):
    now = datetime(2024, 3, 20)
    overdue = await make_subscription(test_db, trader, tier, status="active", gateway_id="sub_overdue",
                                      cycles_billed=1, expires_at=datetime(2024, 4, 1), payment_retry_count=1,
                                      grace_period_ends_at=datetime(2024, 3, 19))
    exhausted = await make_subscription(test_db, trader, tier, status="suspended", gateway_id="sub_exhausted",
                                        cycles_billed=1, payment_retry_count=3,
                                        grace_period_ends_at=datetime(2024, 3, 18))
    in_grace = await make_subscription(test_db, trader, tier, status="active", gateway_id="sub_in_grace",
                                       cycles_billed=1, payment_retry_count=1,
                                       grace_period_ends_at=datetime(2024, 3, 25))

    counts = await sweeps.run_grace_period_sweep(test_db, now)

    assert counts == {"suspended": 1, "ended": 1}
    overdue = await _reload(test_db, overdue)
    assert overdue.status == "suspended"
    assert overdue.payment_retry_count == 3
    assert (await _reload(test_db, exhausted)).status == "expired"
    assert (await _reload(test_db, in_grace)).status == "active"

    # The next run ends the subscription suspended above
    counts = await sweeps.run_grace_period_sweep(test_db, now + timedelta(hours=1))
    assert counts == {"suspended": 0, "ended": 1}
    assert (await _reload(test_db, overdue)).status == "expired"


@pytest.mark.asyncio
async def test_purge_stale_checkouts(test_db, trader, tier):
    now = datetime.utcnow()
    stale = await make_subscription(test_db, trader, tier, gateway_id="sub_stale",
                                    created_at=now - timedelta(days=45))
    fresh = await make_subscription(test_db, trader, tier, gateway_id="sub_fresh")

    counts = await sweeps.purge_stale_checkouts(test_db, now)

    assert counts == {"purged": 1}
    stale = await _reload(test_db, stale)
    assert stale.is_deleted is True
    assert stale.deleted_at == now
    assert (await _reload(test_db, fresh)).is_deleted is False
