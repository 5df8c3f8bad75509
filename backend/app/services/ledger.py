"""Payment ledger: append-mostly record of money movement.

`record_transaction` must be the first write of its database
transaction. It pre-checks the gateway payment id and then relies on
the unique constraint; a constraint violation from a concurrent writer
rolls the transaction back and is reported as an existing row, not an
error.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, case
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import REVENUE_TYPES, TransactionStatus, TransactionType
from app.models.payment_transaction import PaymentTransaction
from app.services.exceptions import BillingValidationError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class LedgerEntry:
    """Fields of a new ledger row."""
    gateway_payment_id: str
    transaction_type: str
    amount: int
    status: str
    analyst_id: str
    trader_id: Optional[str] = None
    subscription_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    payment_method: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    retry_count: int = 0
    currency: str = "INR"
    details: Dict[str, Any] = field(default_factory=dict)


async def find_by_gateway_payment_id(db: AsyncSession, gateway_payment_id: str) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction).where(PaymentTransaction.gateway_payment_id == gateway_payment_id)
    )
    return result.scalar_one_or_none()


async def record_transaction(db: AsyncSession, entry: LedgerEntry) -> Tuple[PaymentTransaction, bool]:
    """
    Insert a ledger row, or return the existing row for the same payment id.

    Returns (transaction, created). When created is False because of a
    constraint race, the session has been rolled back and the caller
    must not apply any further change for this event.
    """
    existing = await find_by_gateway_payment_id(db, entry.gateway_payment_id)
    if existing is not None:
        logger.info(f"Payment {entry.gateway_payment_id} already recorded, skipping")
        return existing, False

    transaction = PaymentTransaction(
        gateway_payment_id=entry.gateway_payment_id,
        transaction_type=entry.transaction_type,
        amount=entry.amount,
        status=entry.status,
        analyst_id=entry.analyst_id,
        trader_id=entry.trader_id,
        subscription_id=entry.subscription_id,
        gateway_order_id=entry.gateway_order_id,
        payment_method=entry.payment_method,
        failure_reason=entry.failure_reason,
        failure_code=entry.failure_code,
        retry_count=entry.retry_count,
        currency=entry.currency,
        details=entry.details,
    )
    db.add(transaction)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        logger.info(f"Payment {entry.gateway_payment_id} recorded concurrently, treating as duplicate")
        existing = await find_by_gateway_payment_id(db, entry.gateway_payment_id)
        if existing is None:
            raise
        return existing, False

    return transaction, True


async def record_refund(
    db: AsyncSession,
    gateway_payment_id: str,
    amount: Optional[int],
    reason: Optional[str],
    gateway_refund_id: str,
    refunded_at: Optional[datetime] = None,
) -> Tuple[PaymentTransaction, bool]:
    """
    Annotate a captured payment as refunded.

    Returns (transaction, changed). Re-applying the same gateway refund id
    is a no-op. `amount=None` refunds the full payment.
    """
    result = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.gateway_payment_id == gateway_payment_id)
        .with_for_update()
    )
    transaction = result.scalar_one_or_none()
    if transaction is None:
        raise NotFoundError("Payment transaction not found")

    if transaction.gateway_refund_id is not None and transaction.gateway_refund_id == gateway_refund_id:
        return transaction, False
    if transaction.status == TransactionStatus.REFUNDED.value:
        raise BillingValidationError("Payment already refunded")
    if transaction.status != TransactionStatus.CAPTURED.value:
        raise BillingValidationError("Only captured payments can be refunded")

    refund_amount = transaction.amount if amount is None else amount
    if refund_amount <= 0:
        raise BillingValidationError("Refund amount must be positive")
    if refund_amount > transaction.amount:
        raise BillingValidationError("Refund amount cannot exceed payment amount")

    transaction.status = TransactionStatus.REFUNDED.value
    transaction.refund_amount = refund_amount
    transaction.refund_reason = reason
    transaction.gateway_refund_id = gateway_refund_id
    transaction.refunded_at = refunded_at or datetime.utcnow()
    await db.flush()

    logger.info(f"Recorded refund {gateway_refund_id} of {refund_amount} on payment {gateway_payment_id}")
    return transaction, True


async def find_payout(db: AsyncSession, payout_reference: str) -> Optional[PaymentTransaction]:
    result = await db.execute(
        select(PaymentTransaction).where(PaymentTransaction.payout_reference == payout_reference)
    )
    return result.scalar_one_or_none()


async def record_payout(
    db: AsyncSession,
    analyst_id: str,
    payout_reference: str,
    transfer_id: str,
    total_revenue: int,
    platform_commission: int,
    payout_amount: int,
    period_start: datetime,
    period_end: datetime,
) -> Tuple[PaymentTransaction, bool]:
    """Insert one payout row per transfer; an existing reference is returned unchanged."""
    existing = await find_payout(db, payout_reference)
    if existing is not None:
        return existing, False

    now = datetime.utcnow()
    transaction = PaymentTransaction(
        analyst_id=analyst_id,
        gateway_payment_id=transfer_id,
        payout_reference=payout_reference,
        transaction_type=TransactionType.PAYOUT.value,
        amount=payout_amount,
        currency=settings.CURRENCY,
        status=TransactionStatus.CAPTURED.value,
        payout_amount=payout_amount,
        platform_commission=platform_commission,
        payout_status="processed",
        paid_out_at=now,
        details={
            "total_revenue": total_revenue,
            "period_start": period_start.isoformat(),
            "period_end": period_end.isoformat(),
        },
    )
    db.add(transaction)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        existing = await find_payout(db, payout_reference)
        if existing is None:
            raise
        return existing, False
    return transaction, True


SETTLED_STATUSES = (TransactionStatus.CAPTURED.value, TransactionStatus.REFUNDED.value)

# What the charge still contributes after any partial or full refund
NET_AMOUNT = PaymentTransaction.amount - func.coalesce(PaymentTransaction.refund_amount, 0)


def _date_filters(query, start: Optional[datetime], end: Optional[datetime]):
    if start is not None:
        query = query.where(PaymentTransaction.created_at >= start)
    if end is not None:
        query = query.where(PaymentTransaction.created_at < end)
    return query


async def list_transactions(
    db: AsyncSession,
    subscription_id: Optional[str] = None,
    trader_id: Optional[str] = None,
    analyst_id: Optional[str] = None,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[PaymentTransaction], int]:
    query = select(PaymentTransaction)
    if subscription_id:
        query = query.where(PaymentTransaction.subscription_id == subscription_id)
    if trader_id:
        query = query.where(PaymentTransaction.trader_id == trader_id)
    if analyst_id:
        query = query.where(PaymentTransaction.analyst_id == analyst_id)
    if status:
        query = query.where(PaymentTransaction.status == status)

    count_result = await db.execute(select(func.count()).select_from(query.subquery()))
    total = count_result.scalar() or 0

    result = await db.execute(
        query.order_by(PaymentTransaction.created_at.desc()).offset(skip).limit(limit)
    )
    return list(result.scalars().all()), total


async def get_analyst_revenue(
    db: AsyncSession,
    analyst_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Captured and refunded subscriber revenue for one analyst."""
    query = select(
        func.count(PaymentTransaction.uuid),
        func.coalesce(func.sum(PaymentTransaction.amount), 0),
        func.coalesce(func.sum(PaymentTransaction.refund_amount), 0),
    ).where(
        PaymentTransaction.analyst_id == analyst_id,
        PaymentTransaction.transaction_type.in_(REVENUE_TYPES),
        PaymentTransaction.status.in_((TransactionStatus.CAPTURED.value, TransactionStatus.REFUNDED.value)),
    )
    count, gross, refunded = (await db.execute(_date_filters(query, start, end))).one()
    return {
        "analyst_id": analyst_id,
        "transaction_count": count,
        "total_revenue": int(gross),
        "total_refunded": int(refunded),
        "net_revenue": int(gross) - int(refunded),
        "average_transaction": int(gross) // count if count else 0,
    }


async def get_user_spending(db: AsyncSession, trader_id: str) -> Dict[str, Any]:
    query = select(
        func.count(PaymentTransaction.uuid),
        func.coalesce(func.sum(PaymentTransaction.amount), 0),
        func.coalesce(func.sum(PaymentTransaction.refund_amount), 0),
    ).where(
        PaymentTransaction.trader_id == trader_id,
        PaymentTransaction.transaction_type.in_(REVENUE_TYPES),
        PaymentTransaction.status.in_((TransactionStatus.CAPTURED.value, TransactionStatus.REFUNDED.value)),
    )
    count, spent, refunded = (await db.execute(query)).one()
    return {
        "trader_id": trader_id,
        "transaction_count": count,
        "total_spent": int(spent),
        "total_refunded": int(refunded),
    }


async def get_platform_revenue(
    db: AsyncSession,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Subscriber revenue across all analysts; commission is taken on the net of refunds."""
    query = select(
        func.count(PaymentTransaction.uuid),
        func.coalesce(func.sum(PaymentTransaction.amount), 0),
        func.coalesce(func.sum(NET_AMOUNT), 0),
    ).where(
        PaymentTransaction.transaction_type.in_(REVENUE_TYPES),
        PaymentTransaction.status.in_(SETTLED_STATUSES),
    )
    count, gross, net = (await db.execute(_date_filters(query, start, end))).one()
    gross, net = int(gross), int(net)
    commission = int(net * settings.PLATFORM_COMMISSION_RATE)
    return {
        "transaction_count": count,
        "gross_revenue": gross,
        "total_refunded": gross - net,
        "net_revenue": net,
        "platform_commission": commission,
        "analyst_share": net - commission,
    }


async def get_success_rate(
    db: AsyncSession,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Share of charge attempts that were captured (refunds count as captured)."""
    succeeded = case(
        (PaymentTransaction.status.in_((TransactionStatus.CAPTURED.value, TransactionStatus.REFUNDED.value)), 1),
        else_=0,
    )
    failed = case((PaymentTransaction.status == TransactionStatus.FAILED.value, 1), else_=0)
    query = select(
        func.count(PaymentTransaction.uuid),
        func.coalesce(func.sum(succeeded), 0),
        func.coalesce(func.sum(failed), 0),
    ).where(PaymentTransaction.transaction_type.in_(REVENUE_TYPES))
    total, captured, failures = (await db.execute(_date_filters(query, start, end))).one()
    return {
        "total_attempts": total,
        "captured": int(captured),
        "failed": int(failures),
        "success_rate": round(int(captured) * 100.0 / total, 2) if total else 0.0,
    }
