"""Tests for analyst payout calculation and transfers."""
from datetime import datetime

import pytest

from app.models.user import User
from app.services import ledger, payouts
from app.services.exceptions import BillingValidationError, GatewayError, NotFoundError

from conftest import make_payment, make_subscription

MARCH = (datetime(2024, 3, 1), datetime(2024, 4, 1))


@pytest.mark.parametrize("revenue,commission,payout", [
    (99900, 19980, 79920),
    (99999, 19999, 80000),
    (1, 0, 1),
    (0, 0, 0),
])
def test_split_commission_floors_platform_share(revenue, commission, payout):
    assert payouts.split_commission(revenue) == (commission, payout)


def test_split_commission_custom_rate():
    assert payouts.split_commission(1000, rate=0.25) == (250, 750)


def test_previous_month():
    assert payouts.previous_month(datetime(2024, 3, 17, 8, 30)) == (datetime(2024, 2, 1), datetime(2024, 3, 1))
    assert payouts.previous_month(datetime(2024, 1, 5)) == (datetime(2023, 12, 1), datetime(2024, 1, 1))


@pytest.mark.asyncio
async def test_calculate_payout_uses_half_open_window(test_db, trader, tier, analyst):
    sub = await make_subscription(test_db, trader, tier, status="active")
    await make_payment(test_db, sub, "pay_start", created_at=datetime(2024, 3, 1))
    await make_payment(test_db, sub, "pay_mid", amount=50000, transaction_type="renewal",
                       created_at=datetime(2024, 3, 15, 12))
    await make_payment(test_db, sub, "pay_end", created_at=datetime(2024, 4, 1))
    await make_payment(test_db, sub, "pay_before", created_at=datetime(2024, 2, 29, 23, 59))
    await make_payment(test_db, sub, "pay_failed", status="failed", created_at=datetime(2024, 3, 10))

    breakdown = await payouts.calculate_payout(test_db, analyst.uuid, *MARCH)

    assert breakdown.transaction_count == 2
    assert breakdown.total_revenue == 149900
    assert breakdown.platform_commission == 29980
    assert breakdown.analyst_payout == 119920
    assert breakdown.commission_rate == 0.20


@pytest.mark.asyncio
async def test_calculate_payout_nets_out_refunds(test_db, trader, tier, analyst):
    sub = await make_subscription(test_db, trader, tier, status="active")
    await make_payment(test_db, sub, "pay_partial", created_at=datetime(2024, 3, 5))
    await make_payment(test_db, sub, "pay_full", amount=50000, transaction_type="renewal",
                       created_at=datetime(2024, 3, 20))
    await ledger.record_refund(test_db, "pay_partial", 100, "Goodwill", "rfnd_1")
    await ledger.record_refund(test_db, "pay_full", None, "Duplicate charge", "rfnd_2")
    await test_db.commit()

    breakdown = await payouts.calculate_payout(test_db, analyst.uuid, *MARCH)

    assert breakdown.total_revenue == 99800
    assert breakdown.platform_commission == 19960
    assert breakdown.analyst_payout == 79840

    revenue = await ledger.get_analyst_revenue(test_db, analyst.uuid, *MARCH)
    assert revenue["net_revenue"] == breakdown.total_revenue


@pytest.mark.asyncio
async def test_transfer_payout_is_idempotent_per_period(test_db, trader, tier, analyst, gateway):
    sub = await make_subscription(test_db, trader, tier, status="active")
    await make_payment(test_db, sub, "pay_1", created_at=datetime(2024, 3, 5))

    payout, created = await payouts.transfer_payout(test_db, gateway, analyst.uuid, *MARCH)

    assert created is True
    assert payout.transaction_type == "payout"
    assert payout.amount == 79920
    assert payout.platform_commission == 19980
    assert payout.payout_reference == payouts.payout_reference(analyst.uuid, *MARCH)
    assert gateway.called("create_transfer") == [
        ("create_transfer", "acc_analyst_1", 79920, payout.payout_reference)
    ]

    again, created = await payouts.transfer_payout(test_db, gateway, analyst.uuid, *MARCH)
    assert created is False
    assert again.uuid == payout.uuid
    assert len(gateway.called("create_transfer")) == 1


@pytest.mark.asyncio
async def test_transfer_payout_nothing_to_pay(test_db, analyst, gateway):
    payout, created = await payouts.transfer_payout(test_db, gateway, analyst.uuid, *MARCH)
    assert (payout, created) == (None, False)
    assert gateway.called("create_transfer") == []


@pytest.mark.asyncio
async def test_transfer_payout_requires_linked_analyst(test_db, trader, gateway):
    unlinked = User(name="New Analyst", email="new@example.com", status="active", user_type="analyst")
    test_db.add(unlinked)
    await test_db.commit()

    with pytest.raises(BillingValidationError):
        await payouts.transfer_payout(test_db, gateway, unlinked.uuid, *MARCH)
    with pytest.raises(NotFoundError):
        await payouts.transfer_payout(test_db, gateway, trader.uuid, *MARCH)


@pytest.mark.asyncio
async def test_run_monthly_payouts(test_db, trader, tier, analyst, gateway):
    sub = await make_subscription(test_db, trader, tier, status="active")
    await make_payment(test_db, sub, "pay_1", created_at=datetime(2024, 3, 5))
    now = datetime(2024, 4, 2, 3, 0)

    assert await payouts.run_monthly_payouts(test_db, gateway, now=now) == {
        "transferred": 1, "skipped": 0, "failed": 0,
    }
    assert await payouts.run_monthly_payouts(test_db, gateway, now=now) == {
        "transferred": 0, "skipped": 1, "failed": 0,
    }


@pytest.mark.asyncio
async def test_run_monthly_payouts_counts_gateway_failures(test_db, trader, tier, analyst, gateway):
    sub = await make_subscription(test_db, trader, tier, status="active")
    await make_payment(test_db, sub, "pay_1", created_at=datetime(2024, 3, 5))
    gateway.fail_with = GatewayError("Transfer rejected")

    counts = await payouts.run_monthly_payouts(test_db, gateway, now=datetime(2024, 4, 2))

    assert counts == {"transferred": 0, "skipped": 0, "failed": 1}
