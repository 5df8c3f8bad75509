"""Subscriptions router for analyst tier subscriptions."""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.user import User
from app.models.enums import SubscriptionStatus, TransactionStatus
from app.schemas.subscriptions import (
    SubscriptionCreateRequest, CheckoutResponse, SubscriptionResponse,
    SubscriptionListResponse, CancelRequest, UpgradeRequest, UpgradeResponse,
    AutoRenewalRequest, SubscriptionActionResponse, PaymentVerifyRequest,
    PaymentVerifyResponse, ActiveSubscriptionCheck,
)
from app.schemas.payments import PaymentTransactionListResponse, SubscriptionDetailResponse
from app.auth.dependencies import get_current_active_user
from app.services import ledger
from app.services import subscriptions as subscription_service
from app.services.gateway import PaymentGateway, get_gateway
from app.services.signature import verify_payment_signature

logger = logging.getLogger(__name__)

router = APIRouter()


def _action_response(outcome: subscription_service.ActionOutcome, response: Response) -> dict:
    if outcome.outcome == subscription_service.PENDING_RECONCILIATION:
        response.status_code = status.HTTP_202_ACCEPTED
    return {
        "outcome": outcome.outcome,
        "message": outcome.message,
        "subscription": outcome.subscription,
    }


@router.post("/api/subscriptions", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    request_data: SubscriptionCreateRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Start a checkout for a subscription tier.

    - Validates tier, capacity, the one-active-per-analyst rule and the discount code
    - Creates the Razorpay customer, plan and subscription
    - Creates a pending_payment subscription; the webhook activates it
    """
    return await subscription_service.create_subscription(
        db, gateway, current_user, request_data.tier_id, request_data.discount_code
    )


@router.get("/api/users/me/subscriptions", response_model=SubscriptionListResponse)
async def list_user_subscriptions(
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """List current user's subscriptions (paginated)."""
    items, total = await subscription_service.list_user_subscriptions(
        db,
        current_user.uuid,
        status=status_filter.value if status_filter else None,
        skip=skip,
        limit=limit,
    )
    return {
        "items": items,
        "total": total,
        "skip": skip,
        "limit": limit
    }


@router.get("/api/subscriptions/expiring-soon", response_model=list[SubscriptionResponse])
async def list_expiring_subscriptions(
    days: int = Query(7, ge=1, le=90),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Active subscriptions with auto-renewal off that end within `days`."""
    return await subscription_service.list_expiring_soon(db, current_user.uuid, days)


@router.get("/api/subscriptions/analysts/{analyst_id}/active", response_model=ActiveSubscriptionCheck)
async def check_active_subscription(
    analyst_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Whether the current user may access the analyst's feed and chat."""
    active = await subscription_service.has_active_subscription(db, current_user.uuid, analyst_id)
    return {"analyst_id": analyst_id, "has_active_subscription": active}


@router.post("/api/subscriptions/payment/verify", response_model=PaymentVerifyResponse)
async def verify_payment(
    request_data: PaymentVerifyRequest,
    current_user: User = Depends(get_current_active_user),
):
    """
    Verify the checkout callback signature.

    The subscription itself is activated by the webhook; this only tells
    the frontend that the payment it saw is genuine.
    """
    if not verify_payment_signature(request_data.order_id, request_data.payment_id, request_data.signature):
        logger.warning(f"Invalid payment signature from user {current_user.uuid} for {request_data.payment_id}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid payment signature"
        )
    return {"verified": True, "payment_id": request_data.payment_id}


@router.get("/api/subscriptions/{subscription_id}", response_model=SubscriptionDetailResponse)
async def get_subscription(
    subscription_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Subscription detail with payment history; visible to the subscriber and the analyst."""
    subscription = await subscription_service.get_owned_subscription(
        db, subscription_id, current_user, allow_analyst=True
    )
    payments, _ = await ledger.list_transactions(db, subscription_id=subscription.uuid, limit=100)
    return {"subscription": subscription, "payments": payments}


@router.get("/api/subscriptions/{subscription_id}/invoices", response_model=PaymentTransactionListResponse)
async def list_invoices(
    subscription_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Captured payments of a subscription."""
    subscription = await subscription_service.get_owned_subscription(db, subscription_id, current_user)
    items, total = await ledger.list_transactions(
        db,
        subscription_id=subscription.uuid,
        status=TransactionStatus.CAPTURED.value,
        skip=skip,
        limit=limit,
    )
    return {"items": items, "total": total, "skip": skip, "limit": limit}


@router.post("/api/subscriptions/{subscription_id}/cancel", response_model=SubscriptionActionResponse)
async def cancel_subscription(
    subscription_id: str,
    request_data: CancelRequest,
    response: Response,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Cancel at the end of the paid period, or immediately."""
    outcome = await subscription_service.cancel_subscription(
        db, gateway, subscription_id, current_user, immediate=request_data.immediate
    )
    return _action_response(outcome, response)


@router.post("/api/subscriptions/{subscription_id}/pause", response_model=SubscriptionActionResponse)
async def pause_subscription(
    subscription_id: str,
    response: Response,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    outcome = await subscription_service.pause_subscription(db, gateway, subscription_id, current_user)
    return _action_response(outcome, response)


@router.post("/api/subscriptions/{subscription_id}/resume", response_model=SubscriptionActionResponse)
async def resume_subscription(
    subscription_id: str,
    response: Response,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    outcome = await subscription_service.resume_subscription(db, gateway, subscription_id, current_user)
    return _action_response(outcome, response)


@router.post("/api/subscriptions/{subscription_id}/upgrade", response_model=UpgradeResponse)
async def upgrade_subscription(
    subscription_id: str,
    request_data: UpgradeRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Move to a higher-priced tier of the same analyst.

    The current subscription runs until the end of its period; the
    returned checkout starts the new one.
    """
    old_subscription, checkout = await subscription_service.upgrade_subscription(
        db, gateway, subscription_id, current_user, request_data.new_tier_id
    )
    return {"old_subscription": old_subscription, "checkout": checkout}


@router.post("/api/subscriptions/{subscription_id}/retry-payment", response_model=SubscriptionResponse)
async def retry_payment(
    subscription_id: str,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Ask Razorpay to charge a suspended or unpaid subscription again."""
    return await subscription_service.retry_failed_payment(db, gateway, subscription_id, current_user)


@router.post("/api/subscriptions/{subscription_id}/auto-renewal", response_model=SubscriptionActionResponse)
async def set_auto_renewal(
    subscription_id: str,
    request_data: AutoRenewalRequest,
    response: Response,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Turning renewal off schedules a cycle-end cancellation on Razorpay."""
    outcome = await subscription_service.toggle_auto_renewal(
        db, gateway, subscription_id, current_user, request_data.enabled
    )
    return _action_response(outcome, response)
