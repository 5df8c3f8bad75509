"""Ledger reporting, refunds and analyst payouts."""
import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.user import User
from app.models.enums import TransactionStatus
from app.schemas.payments import (
    PaymentTransactionListResponse, RefundRequest, RefundResponse,
    PayoutPreviewResponse, PayoutTransferRequest, PayoutTransferResponse,
)
from app.auth.dependencies import get_current_active_user, analyst_required, admin_required
from app.services import ledger, payouts
from app.services.gateway import PaymentGateway, get_gateway
from app.services.refunds import process_refund

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/api/users/me/payments", response_model=PaymentTransactionListResponse)
async def list_my_payments(
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    items, total = await ledger.list_transactions(
        db,
        trader_id=current_user.uuid,
        status=status_filter.value if status_filter else None,
        skip=skip,
        limit=limit,
    )
    return {"items": items, "total": total, "skip": skip, "limit": limit}


@router.get("/api/users/me/spending")
async def get_my_spending(
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Total captured subscription spend of the current user, in paise."""
    return await ledger.get_user_spending(db, current_user.uuid)


@router.get("/api/analysts/me/revenue")
async def get_my_revenue(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    analyst: User = Depends(analyst_required),
    db: AsyncSession = Depends(get_db)
):
    """Subscriber revenue for the current analyst, optionally within [start, end)."""
    return await ledger.get_analyst_revenue(db, analyst.uuid, start, end)


@router.get("/api/analysts/me/payouts/preview", response_model=PayoutPreviewResponse)
async def preview_my_payout(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    analyst: User = Depends(analyst_required),
    db: AsyncSession = Depends(get_db)
):
    """
    Preview the payout for a period.

    Defaults to the previous calendar month, the period the monthly
    payout job transfers.
    """
    if start is None or end is None:
        start, end = payouts.previous_month(datetime.utcnow())
    if end <= start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Period end must be after period start"
        )
    return await payouts.calculate_payout(db, analyst.uuid, start, end)


@router.post("/api/admin/payouts", response_model=PayoutTransferResponse)
async def transfer_payout(
    request_data: PayoutTransferRequest,
    admin: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Transfer one analyst's payout for a period; repeating the same period is a no-op."""
    if request_data.period_end <= request_data.period_start:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Period end must be after period start"
        )
    transaction, created = await payouts.transfer_payout(
        db, gateway, request_data.analyst_id, request_data.period_start, request_data.period_end
    )
    logger.info(f"Admin {admin.uuid} requested payout for analyst {request_data.analyst_id}: created={created}")
    return {"created": created, "transaction": transaction}


@router.post("/api/admin/refunds", response_model=RefundResponse)
async def refund_payment(
    request_data: RefundRequest,
    admin: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Refund a captured subscription payment.

    - Omitting the amount refunds in full
    - A full refund also cancels the subscription if it is still active
    """
    transaction, transition = await process_refund(
        db, gateway, request_data.payment_id, request_data.amount, request_data.reason
    )
    logger.info(f"Admin {admin.uuid} refunded {transaction.refund_amount} of payment {transaction.gateway_payment_id}")
    return {"transaction": transaction, "subscription_cancelled": transition is not None}


@router.get("/api/admin/revenue")
async def get_platform_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    admin: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """Platform revenue split and payment success rate."""
    revenue = await ledger.get_platform_revenue(db, start, end)
    success = await ledger.get_success_rate(db, start, end)
    return {**revenue, **success}


@router.get("/api/admin/payments", response_model=PaymentTransactionListResponse)
async def list_payments(
    analyst_id: Optional[str] = None,
    trader_id: Optional[str] = None,
    status_filter: Optional[TransactionStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    admin: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    items, total = await ledger.list_transactions(
        db,
        trader_id=trader_id,
        analyst_id=analyst_id,
        status=status_filter.value if status_filter else None,
        skip=skip,
        limit=limit,
    )
    return {"items": items, "total": total, "skip": skip, "limit": limit}
