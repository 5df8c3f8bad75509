"""Analyst tiers and discount codes."""
import logging
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.database import get_db
from app.models.user import User
from app.models.subscription_tier import SubscriptionTier
from app.schemas.discounts import (
    DiscountCodeCreate, DiscountCodeResponse, DiscountValidateRequest,
    DiscountValidateResponse, TierCreate, TierResponse,
)
from app.auth.dependencies import get_current_active_user, analyst_required
from app.services import discounts
from app.services.subscriptions import get_active_tier

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/tiers", response_model=TierResponse, status_code=status.HTTP_201_CREATED)
async def create_tier(
    tier_data: TierCreate,
    analyst: User = Depends(analyst_required),
    db: AsyncSession = Depends(get_db)
):
    """Publish a subscription tier. The Razorpay plan is created on first checkout."""
    tier = SubscriptionTier(
        analyst_id=analyst.uuid,
        name=tier_data.name,
        description=tier_data.description,
        price=tier_data.price,
        billing_cycle=tier_data.billing_cycle,
        features=tier_data.features,
        max_subscribers=tier_data.max_subscribers,
        is_active=True,
    )
    db.add(tier)
    await db.commit()
    await db.refresh(tier)
    logger.info(f"Analyst {analyst.uuid} created tier {tier.uuid} at {tier.price} paise/{tier.billing_cycle}")
    return tier


@router.get("/api/analysts/{analyst_id}/tiers", response_model=list[TierResponse])
async def list_analyst_tiers(analyst_id: str, db: AsyncSession = Depends(get_db)):
    """Active tiers of an analyst, cheapest first."""
    result = await db.execute(
        select(SubscriptionTier)
        .where(SubscriptionTier.analyst_id == analyst_id, SubscriptionTier.is_active.is_(True))
        .order_by(SubscriptionTier.price)
    )
    return result.scalars().all()


@router.post("/api/discount-codes", response_model=DiscountCodeResponse, status_code=status.HTTP_201_CREATED)
async def create_discount_code(
    code_data: DiscountCodeCreate,
    analyst: User = Depends(analyst_required),
    db: AsyncSession = Depends(get_db)
):
    return await discounts.create_discount_code(db, analyst.uuid, **code_data.model_dump())


@router.get("/api/discount-codes", response_model=list[DiscountCodeResponse])
async def list_discount_codes(
    analyst: User = Depends(analyst_required),
    db: AsyncSession = Depends(get_db)
):
    return await discounts.list_discount_codes(db, analyst.uuid)


@router.delete("/api/discount-codes/{discount_code_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_discount_code(
    discount_code_id: str,
    analyst: User = Depends(analyst_required),
    db: AsyncSession = Depends(get_db)
):
    await discounts.delete_discount_code(db, analyst.uuid, discount_code_id)


@router.post("/api/discount-codes/validate", response_model=DiscountValidateResponse)
async def validate_discount_code(
    request_data: DiscountValidateRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Preview a discount code against a tier before checkout.

    An invalid code is not an error here: the response carries the reason
    and the undiscounted price.
    """
    tier = await get_active_tier(db, request_data.tier_id)
    validation = await discounts.validate_discount_code(
        db, request_data.code, current_user.uuid, tier, tier.billing_cycle
    )
    discount_amount = 0
    if validation.is_valid:
        discount_amount = discounts.calculate_discount(validation.discount_code, tier.price)
    return {
        "is_valid": validation.is_valid,
        "reason": validation.reason,
        "original_price": tier.price,
        "discount_amount": discount_amount,
        "final_price": tier.price - discount_amount,
    }
