"""Discount codes and tier capacity.

Validation runs the checks in a fixed order and stops at the first
failure, returning the reason shown to the subscriber. Amounts are
integer paise.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.discount_code import DiscountCode
from app.models.enums import BillingCycle, DiscountType, SubscriptionStatus
from app.models.subscription import Subscription
from app.models.subscription_tier import SubscriptionTier
from app.services.exceptions import BillingValidationError, NotFoundError, PermissionDeniedError

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"^[A-Z0-9]{3,50}$", re.IGNORECASE)
CYCLE_RESTRICTIONS = (BillingCycle.MONTHLY.value, BillingCycle.YEARLY.value, "both")


@dataclass
class DiscountValidation:
    is_valid: bool
    reason: str
    discount_code: Optional[DiscountCode] = None


def _invalid(reason: str, code: Optional[DiscountCode] = None) -> DiscountValidation:
    return DiscountValidation(is_valid=False, reason=reason, discount_code=code)


async def find_by_code(db: AsyncSession, code: str) -> Optional[DiscountCode]:
    result = await db.execute(
        select(DiscountCode).where(
            DiscountCode.code == code.strip().upper(),
            DiscountCode.is_deleted.is_(False),
        )
    )
    return result.scalar_one_or_none()


async def validate_discount_code(
    db: AsyncSession,
    code: str,
    trader_id: str,
    tier: SubscriptionTier,
    billing_cycle: str,
    now: Optional[datetime] = None,
) -> DiscountValidation:
    """Check whether `code` may be used by `trader_id` on `tier`."""
    now = now or datetime.utcnow()
    discount = await find_by_code(db, code)
    if discount is None:
        return _invalid("Discount code not found")

    if not discount.is_active:
        return _invalid("This discount code has been deactivated", discount)
    if discount.valid_from is not None and discount.valid_from > now:
        return _invalid("This discount code is not yet active", discount)
    if discount.valid_until is not None and discount.valid_until < now:
        return _invalid("This discount code has expired", discount)

    if discount.usage_limit is not None and discount.usage_count >= discount.usage_limit:
        return _invalid("This discount code has reached its maximum usage limit", discount)

    used = await db.execute(
        select(func.count(Subscription.uuid)).where(
            Subscription.trader_id == trader_id,
            Subscription.discount_code_id == discount.uuid,
            Subscription.is_deleted.is_(False),
        )
    )
    if (used.scalar() or 0) >= discount.per_user_limit:
        return _invalid(
            f"You have already used this discount code {discount.per_user_limit} time(s)", discount
        )

    if discount.billing_cycle_restriction != "both" and discount.billing_cycle_restriction != billing_cycle:
        return _invalid(
            f"This discount code is only valid for {discount.billing_cycle_restriction} billing", discount
        )

    if discount.analyst_id != tier.analyst_id or (
        discount.applicable_tiers and tier.uuid not in discount.applicable_tiers
    ):
        return _invalid("This discount code is not applicable to the selected tier", discount)

    if discount.first_time_only:
        prior = await db.execute(
            select(func.count(Subscription.uuid)).where(
                Subscription.trader_id == trader_id,
                Subscription.analyst_id == discount.analyst_id,
                Subscription.is_deleted.is_(False),
            )
        )
        if (prior.scalar() or 0) > 0:
            return _invalid("This discount code is only valid for first-time subscribers", discount)

    return DiscountValidation(is_valid=True, reason="Valid discount code", discount_code=discount)


def calculate_discount(discount: DiscountCode, price: int) -> int:
    """
    Discount in paise for a tier price.

    Percentage discounts are floored and capped by max_discount_amount;
    fixed discounts never exceed the price.
    """
    if price <= 0:
        return 0
    if discount.discount_type == DiscountType.PERCENTAGE.value:
        amount = (price * discount.discount_value) // 100
        if discount.max_discount_amount is not None and amount > discount.max_discount_amount:
            amount = discount.max_discount_amount
    else:
        amount = discount.discount_value
    return max(0, min(amount, price))


async def apply_discount_code(db: AsyncSession, discount_code_id: str) -> None:
    """Increment usage_count atomically in the database."""
    await db.execute(
        update(DiscountCode)
        .where(DiscountCode.uuid == discount_code_id)
        .values(usage_count=DiscountCode.usage_count + 1)
    )


async def count_active_subscribers(db: AsyncSession, tier_id: str) -> int:
    result = await db.execute(
        select(func.count(Subscription.uuid)).where(
            Subscription.tier_id == tier_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.is_deleted.is_(False),
        )
    )
    return result.scalar() or 0


async def is_tier_at_capacity(db: AsyncSession, tier: SubscriptionTier) -> bool:
    """A tier without max_subscribers is never full."""
    if tier.max_subscribers is None:
        return False
    return await count_active_subscribers(db, tier.uuid) >= tier.max_subscribers


async def create_discount_code(
    db: AsyncSession,
    analyst_id: str,
    code: str,
    discount_type: str,
    discount_value: int,
    code_name: Optional[str] = None,
    description: Optional[str] = None,
    max_discount_amount: Optional[int] = None,
    applicable_tiers: Optional[List[str]] = None,
    billing_cycle_restriction: str = "both",
    first_time_only: bool = False,
    usage_limit: Optional[int] = None,
    per_user_limit: int = 1,
    valid_from: Optional[datetime] = None,
    valid_until: Optional[datetime] = None,
) -> DiscountCode:
    if not CODE_PATTERN.match(code or ""):
        raise BillingValidationError("Discount code must be 3-50 characters (alphanumeric only)")
    if discount_type not in (DiscountType.PERCENTAGE.value, DiscountType.FIXED_AMOUNT.value):
        raise BillingValidationError('Discount type must be "percentage" or "fixed_amount"')
    if discount_type == DiscountType.PERCENTAGE.value and not 1 <= discount_value <= 100:
        raise BillingValidationError("Percentage discount must be between 1 and 100")
    if discount_type == DiscountType.FIXED_AMOUNT.value and discount_value <= 0:
        raise BillingValidationError("Fixed amount discount must be greater than 0")
    if billing_cycle_restriction not in CYCLE_RESTRICTIONS:
        raise BillingValidationError('Billing cycle restriction must be "monthly", "yearly", or "both"')
    if valid_from and valid_until and valid_until <= valid_from:
        raise BillingValidationError("valid_until must be after valid_from")

    if applicable_tiers:
        result = await db.execute(
            select(func.count(SubscriptionTier.uuid)).where(
                SubscriptionTier.uuid.in_(applicable_tiers),
                SubscriptionTier.analyst_id == analyst_id,
            )
        )
        if (result.scalar() or 0) != len(set(applicable_tiers)):
            raise BillingValidationError("Applicable tiers must belong to you")

    discount = DiscountCode(
        analyst_id=analyst_id,
        code=code.upper(),
        code_name=code_name,
        description=description,
        discount_type=discount_type,
        discount_value=discount_value,
        max_discount_amount=max_discount_amount,
        applicable_tiers=applicable_tiers or [],
        billing_cycle_restriction=billing_cycle_restriction,
        first_time_only=first_time_only,
        usage_limit=usage_limit,
        per_user_limit=per_user_limit,
        valid_from=valid_from or datetime.utcnow(),
        valid_until=valid_until,
    )
    db.add(discount)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise BillingValidationError("This discount code is already in use. Please choose a different code.")
    await db.refresh(discount)
    logger.info(f"Analyst {analyst_id} created discount code {discount.code}")
    return discount


async def list_discount_codes(db: AsyncSession, analyst_id: str) -> List[DiscountCode]:
    result = await db.execute(
        select(DiscountCode)
        .where(DiscountCode.analyst_id == analyst_id, DiscountCode.is_deleted.is_(False))
        .order_by(DiscountCode.created_at.desc())
    )
    return list(result.scalars().all())


async def delete_discount_code(db: AsyncSession, analyst_id: str, discount_code_id: str) -> None:
    """Tombstone a code; subscriptions that used it keep their reference."""
    result = await db.execute(
        select(DiscountCode).where(DiscountCode.uuid == discount_code_id, DiscountCode.is_deleted.is_(False))
    )
    discount = result.scalar_one_or_none()
    if discount is None:
        raise NotFoundError("Discount code not found")
    if discount.analyst_id != analyst_id:
        raise PermissionDeniedError("Not authorized to delete this discount code")

    discount.is_deleted = True
    discount.is_active = False
    await db.commit()
    logger.info(f"Discount code {discount.code} deleted by analyst {analyst_id}")
