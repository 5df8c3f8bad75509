"""Analyst payouts computed from the payment ledger."""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import REVENUE_TYPES, UserType
from app.models.payment_transaction import PaymentTransaction
from app.models.user import User
from app.services import ledger
from app.services.exceptions import BillingValidationError, GatewayError, NotFoundError
from app.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)


@dataclass
class PayoutBreakdown:
    analyst_id: str
    period_start: datetime
    period_end: datetime
    total_revenue: int
    platform_commission: int
    analyst_payout: int
    transaction_count: int
    commission_rate: float


def split_commission(total_revenue: int, rate: Optional[float] = None) -> Tuple[int, int]:
    """Return (platform_commission, analyst_payout); commission is floored to the paisa."""
    rate = settings.PLATFORM_COMMISSION_RATE if rate is None else rate
    commission = math.floor(total_revenue * rate)
    return commission, total_revenue - commission


def payout_reference(analyst_id: str, start: datetime, end: datetime) -> str:
    return f"payout:{analyst_id}:{start:%Y-%m-%d}:{end:%Y-%m-%d}"


def previous_month(now: datetime) -> Tuple[datetime, datetime]:
    """[first day of last month, first day of this month)."""
    this_month = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return this_month - relativedelta(months=1), this_month


async def calculate_payout(db: AsyncSession, analyst_id: str, start: datetime, end: datetime) -> PayoutBreakdown:
    """
    Sum subscription revenue charged in [start, end) and split it.

    Refunded charges count for what is left of them after the refund, so
    a partial refund only takes the refunded part out of the payout.
    """
    result = await db.execute(
        select(
            func.count(PaymentTransaction.uuid),
            func.coalesce(func.sum(ledger.NET_AMOUNT), 0),
        ).where(
            PaymentTransaction.analyst_id == analyst_id,
            PaymentTransaction.transaction_type.in_(REVENUE_TYPES),
            PaymentTransaction.status.in_(ledger.SETTLED_STATUSES),
            PaymentTransaction.created_at >= start,
            PaymentTransaction.created_at < end,
        )
    )
    count, total = result.one()
    total = int(total)
    commission, payout = split_commission(total)
    return PayoutBreakdown(
        analyst_id=analyst_id,
        period_start=start,
        period_end=end,
        total_revenue=total,
        platform_commission=commission,
        analyst_payout=payout,
        transaction_count=count,
        commission_rate=settings.PLATFORM_COMMISSION_RATE,
    )


async def transfer_payout(
    db: AsyncSession,
    gateway: PaymentGateway,
    analyst_id: str,
    start: datetime,
    end: datetime,
) -> Tuple[Optional[PaymentTransaction], bool]:
    """
    Transfer an analyst's share for one period to their linked account.

    Returns (payout_row, created). A period that was already paid returns
    its existing row; a period with nothing to pay returns (None, False).
    """
    analyst = await db.get(User, analyst_id)
    if analyst is None or analyst.user_type != UserType.ANALYST.value:
        raise NotFoundError("Analyst not found")
    if not analyst.razorpay_account_id:
        raise BillingValidationError("Analyst has no linked bank account")

    reference = payout_reference(analyst_id, start, end)
    existing = await ledger.find_payout(db, reference)
    if existing is not None:
        logger.info(f"Payout {reference} already transferred ({existing.gateway_payment_id})")
        return existing, False

    breakdown = await calculate_payout(db, analyst_id, start, end)
    if breakdown.analyst_payout <= 0:
        return None, False

    transfer = await gateway.create_transfer(
        analyst.razorpay_account_id, breakdown.analyst_payout, settings.CURRENCY, reference
    )
    payout, created = await ledger.record_payout(
        db,
        analyst_id=analyst_id,
        payout_reference=reference,
        transfer_id=transfer.id,
        total_revenue=breakdown.total_revenue,
        platform_commission=breakdown.platform_commission,
        payout_amount=breakdown.analyst_payout,
        period_start=start,
        period_end=end,
    )
    await db.commit()
    logger.info(f"Payout transferred to analyst {analyst_id}: {breakdown.analyst_payout} paise ({transfer.id})")
    return payout, created


async def run_monthly_payouts(
    db: AsyncSession,
    gateway: PaymentGateway,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Pay every analyst with a linked account for the previous calendar month."""
    start, end = previous_month(now or datetime.utcnow())
    result = await db.execute(
        select(User.uuid).where(
            User.user_type == UserType.ANALYST.value,
            User.razorpay_account_id.is_not(None),
        )
    )
    analyst_ids = list(result.scalars().all())

    counts = {"transferred": 0, "skipped": 0, "failed": 0}
    for analyst_id in analyst_ids:
        try:
            _, created = await transfer_payout(db, gateway, analyst_id, start, end)
        except GatewayError as e:
            await db.rollback()
            counts["failed"] += 1
            logger.error(f"Payout for analyst {analyst_id} failed: {e.message}")
            continue
        counts["transferred" if created else "skipped"] += 1

    logger.info(
        f"Monthly payouts {start:%Y-%m-%d}..{end:%Y-%m-%d}: {counts['transferred']} transferred, "
        f"{counts['skipped']} skipped, {counts['failed']} failed"
    )
    return counts
