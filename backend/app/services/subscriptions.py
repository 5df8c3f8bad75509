"""Subscription checkout and user-initiated lifecycle actions.

Actions lock the subscription row, call the gateway, then apply the
local transition and commit. A gateway timeout rolls the local change
back and reports the outcome as pending reconciliation; the next
webhook or sweep settles it.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import BillingCycle, SubscriptionStatus, TERMINAL_STATUSES
from app.models.subscription import Subscription
from app.models.subscription_tier import SubscriptionTier
from app.models.user import User
from app.services import discounts
from app.services import subscription_state as sm
from app.services.exceptions import (
    BillingValidationError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    PermissionDeniedError,
)
from app.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)

APPLIED = "applied"
PENDING_RECONCILIATION = "pending_reconciliation"


@dataclass
class ActionOutcome:
    subscription: Subscription
    outcome: str
    message: str


async def has_active_subscription(
    db: AsyncSession,
    trader_id: str,
    analyst_id: str,
    exclude_subscription_id: Optional[str] = None,
) -> bool:
    query = select(func.count(Subscription.uuid)).where(
        Subscription.trader_id == trader_id,
        Subscription.analyst_id == analyst_id,
        Subscription.status == SubscriptionStatus.ACTIVE.value,
        Subscription.is_deleted.is_(False),
    )
    if exclude_subscription_id:
        query = query.where(Subscription.uuid != exclude_subscription_id)
    result = await db.execute(query)
    return (result.scalar() or 0) > 0


async def get_active_tier(db: AsyncSession, tier_id: str) -> SubscriptionTier:
    result = await db.execute(
        select(SubscriptionTier).where(SubscriptionTier.uuid == tier_id, SubscriptionTier.is_active.is_(True))
    )
    tier = result.scalar_one_or_none()
    if tier is None:
        raise NotFoundError("Subscription tier not found or inactive")
    return tier


def total_count_for(billing_cycle: str) -> int:
    if billing_cycle == BillingCycle.YEARLY.value:
        return settings.YEARLY_TOTAL_COUNT
    return settings.MONTHLY_TOTAL_COUNT


async def _create_checkout(
    db: AsyncSession,
    gateway: PaymentGateway,
    trader: User,
    tier: SubscriptionTier,
    discount_code: Optional[str] = None,
    replacing_subscription_id: Optional[str] = None,
) -> Dict[str, Any]:
    if trader.uuid == tier.analyst_id:
        raise BillingValidationError("You cannot subscribe to your own tier")
    if await has_active_subscription(db, trader.uuid, tier.analyst_id, exclude_subscription_id=replacing_subscription_id):
        raise BillingValidationError("You already have an active subscription with this analyst")
    if await discounts.is_tier_at_capacity(db, tier):
        raise BillingValidationError("This tier has reached its maximum number of subscribers")

    billing_cycle = tier.billing_cycle or BillingCycle.MONTHLY.value
    discount_amount = 0
    discount_code_id = None
    if discount_code:
        validation = await discounts.validate_discount_code(db, discount_code, trader.uuid, tier, billing_cycle)
        if not validation.is_valid:
            raise BillingValidationError(validation.reason)
        discount_amount = discounts.calculate_discount(validation.discount_code, tier.price)
        discount_code_id = validation.discount_code.uuid
    final_price = tier.price - discount_amount

    analyst = await db.get(User, tier.analyst_id)

    # Gateway objects first; nothing local is written until they exist.
    if not trader.razorpay_customer_id:
        customer = await gateway.create_customer(trader.name, trader.email, trader.phone_number)
        trader.razorpay_customer_id = customer.id
        logger.info(f"Created gateway customer {customer.id} for user {trader.uuid}")

    if discount_amount:
        plan_id = (await gateway.create_plan(
            f"{tier.name} - {billing_cycle} ({discount_code.upper()})",
            final_price,
            settings.CURRENCY,
            billing_cycle,
            tier.description,
        )).id
    else:
        if not tier.razorpay_plan_id:
            plan = await gateway.create_plan(
                f"{tier.name} - {billing_cycle}", tier.price, settings.CURRENCY, billing_cycle, tier.description
            )
            tier.razorpay_plan_id = plan.id
        plan_id = tier.razorpay_plan_id

    gateway_subscription = await gateway.create_subscription(
        plan_id,
        trader.razorpay_customer_id,
        total_count_for(billing_cycle),
        notes={
            "trader_id": trader.uuid,
            "analyst_id": tier.analyst_id,
            "tier_id": tier.uuid,
            "discount_code": discount_code or "none",
        },
    )

    subscription = Subscription(
        trader_id=trader.uuid,
        analyst_id=tier.analyst_id,
        tier_id=tier.uuid,
        status=SubscriptionStatus.PENDING_PAYMENT.value,
        billing_cycle=billing_cycle,
        price_paid=tier.price,
        discount_applied=discount_amount,
        final_price=final_price,
        discount_code_id=discount_code_id,
        auto_renewal=True,
        razorpay_subscription_id=gateway_subscription.id,
        razorpay_customer_id=trader.razorpay_customer_id,
        razorpay_plan_id=plan_id,
    )
    db.add(subscription)
    if discount_code_id:
        await discounts.apply_discount_code(db, discount_code_id)
    await db.flush()

    logger.info(
        f"Checkout created subscription {subscription.uuid} ({gateway_subscription.id}) "
        f"for trader {trader.uuid} on tier {tier.uuid}: {tier.price} - {discount_amount} = {final_price}"
    )
    return {
        "subscription_id": subscription.uuid,
        "gateway_subscription_id": gateway_subscription.id,
        "key_id": settings.RAZORPAY_KEY_ID,
        "amount": final_price,
        "currency": settings.CURRENCY,
        "tier_name": tier.name,
        "description": tier.description,
        "analyst_name": analyst.name if analyst else "Analyst",
        "billing_cycle": billing_cycle,
        "customer_email": trader.email,
        "customer_phone": trader.phone_number,
    }


async def create_subscription(
    db: AsyncSession,
    gateway: PaymentGateway,
    trader: User,
    tier_id: str,
    discount_code: Optional[str] = None,
) -> Dict[str, Any]:
    """Checkout: create the pending subscription and the gateway objects it bills through."""
    tier = await get_active_tier(db, tier_id)
    checkout = await _create_checkout(db, gateway, trader, tier, discount_code)
    await db.commit()
    return checkout


async def get_owned_subscription(
    db: AsyncSession,
    subscription_id: str,
    user: User,
    lock: bool = False,
    allow_analyst: bool = False,
) -> Subscription:
    query = Subscription.live().where(Subscription.uuid == subscription_id)
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription not found")
    if subscription.trader_id != user.uuid and not (allow_analyst and subscription.analyst_id == user.uuid):
        raise PermissionDeniedError("Not authorized to access this subscription")
    return subscription


async def _gateway_action(db: AsyncSession, subscription: Subscription, action: str, call) -> Optional[ActionOutcome]:
    """Run a gateway call; on timeout roll back and report the outcome as unknown."""
    if not subscription.razorpay_subscription_id:
        return None
    try:
        await call(subscription.razorpay_subscription_id)
    except GatewayTimeoutError:
        await db.rollback()
        await db.refresh(subscription)
        logger.warning(f"Gateway timed out during {action} of subscription {subscription.uuid}, awaiting reconciliation")
        return ActionOutcome(
            subscription,
            PENDING_RECONCILIATION,
            f"The payment gateway did not confirm the {action} in time. It will be reconciled automatically.",
        )
    except GatewayError:
        await db.rollback()
        raise
    return None


async def cancel_subscription(
    db: AsyncSession,
    gateway: PaymentGateway,
    subscription_id: str,
    user: User,
    immediate: bool = False,
) -> ActionOutcome:
    subscription = await get_owned_subscription(db, subscription_id, user, lock=True)
    if immediate and subscription.status in TERMINAL_STATUSES:
        raise BillingValidationError("Subscription is already cancelled or expired")
    if not immediate and subscription.status != SubscriptionStatus.ACTIVE.value:
        raise BillingValidationError("Only active subscriptions can be cancelled at cycle end")

    pending = await _gateway_action(
        db, subscription, "cancellation",
        lambda gid: gateway.cancel_subscription(gid, at_cycle_end=not immediate),
    )
    if pending:
        return pending

    sm.cancel(subscription, immediate=immediate, at=datetime.utcnow())
    await db.commit()
    logger.info(f"Subscription {subscription.uuid} cancelled ({'immediately' if immediate else 'at cycle end'})")
    message = "Subscription cancelled immediately" if immediate else "Subscription will cancel at end of billing period"
    return ActionOutcome(subscription, APPLIED, message)


async def pause_subscription(db: AsyncSession, gateway: PaymentGateway, subscription_id: str, user: User) -> ActionOutcome:
    subscription = await get_owned_subscription(db, subscription_id, user, lock=True)
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        raise BillingValidationError("Only active subscriptions can be paused")

    pending = await _gateway_action(db, subscription, "pause", gateway.pause_subscription)
    if pending:
        return pending

    sm.pause(subscription, datetime.utcnow())
    await db.commit()
    logger.info(f"Subscription {subscription.uuid} paused")
    return ActionOutcome(subscription, APPLIED, "Subscription paused")


async def resume_subscription(db: AsyncSession, gateway: PaymentGateway, subscription_id: str, user: User) -> ActionOutcome:
    subscription = await get_owned_subscription(db, subscription_id, user, lock=True)
    if subscription.status != SubscriptionStatus.SUSPENDED.value:
        raise BillingValidationError("Only suspended subscriptions can be resumed")

    pending = await _gateway_action(db, subscription, "resume", gateway.resume_subscription)
    if pending:
        return pending

    sm.resume(subscription)
    await db.commit()
    logger.info(f"Subscription {subscription.uuid} resumed")
    return ActionOutcome(subscription, APPLIED, "Subscription resumed")


async def upgrade_subscription(
    db: AsyncSession,
    gateway: PaymentGateway,
    subscription_id: str,
    user: User,
    new_tier_id: str,
) -> Tuple[Subscription, Dict[str, Any]]:
    """
    Move to a higher-priced tier of the same analyst.

    The current subscription is cancelled at cycle end and a new checkout
    is created; the old row is retired when the new one activates.
    """
    subscription = await get_owned_subscription(db, subscription_id, user, lock=True)
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        raise BillingValidationError("Only active subscriptions can be upgraded")

    result = await db.execute(
        select(SubscriptionTier).where(
            SubscriptionTier.uuid == new_tier_id,
            SubscriptionTier.analyst_id == subscription.analyst_id,
            SubscriptionTier.is_active.is_(True),
        )
    )
    new_tier = result.scalar_one_or_none()
    if new_tier is None:
        raise NotFoundError("New tier not found or not available for this analyst")
    if new_tier.price <= subscription.price_paid:
        raise BillingValidationError("New tier must be higher priced than current tier")
    if await discounts.is_tier_at_capacity(db, new_tier):
        raise BillingValidationError("New tier is at maximum capacity")

    if subscription.razorpay_subscription_id:
        try:
            await gateway.cancel_subscription(subscription.razorpay_subscription_id, at_cycle_end=True)
        except GatewayError:
            await db.rollback()
            raise
    sm.cancel(subscription, immediate=False, at=datetime.utcnow())

    try:
        checkout = await _create_checkout(db, gateway, user, new_tier, replacing_subscription_id=subscription.uuid)
    except Exception:
        await db.rollback()
        raise
    await db.commit()
    logger.info(f"Subscription {subscription.uuid} upgraded to tier {new_tier.uuid} ({checkout['subscription_id']})")
    return subscription, checkout


async def retry_failed_payment(db: AsyncSession, gateway: PaymentGateway, subscription_id: str, user: User) -> Subscription:
    subscription = await get_owned_subscription(db, subscription_id, user, lock=True)
    if subscription.status not in (SubscriptionStatus.SUSPENDED.value, SubscriptionStatus.PENDING_PAYMENT.value):
        raise BillingValidationError("Subscription is not in a failed payment state")
    if not subscription.razorpay_subscription_id:
        raise BillingValidationError("Subscription has no gateway reference to retry")

    try:
        await gateway.retry_payment(subscription.razorpay_subscription_id)
    except GatewayError:
        await db.rollback()
        raise
    subscription.last_payment_attempt = datetime.utcnow()
    await db.commit()
    logger.info(f"Manual payment retry requested for subscription {subscription.uuid}")
    return subscription


async def toggle_auto_renewal(
    db: AsyncSession,
    gateway: PaymentGateway,
    subscription_id: str,
    user: User,
    enabled: bool,
) -> ActionOutcome:
    """
    Turn renewal off by cancelling at cycle end on the gateway.

    Razorpay cannot take back a cycle-end cancellation, so once one has
    been sent renewal cannot be turned back on for this subscription.
    """
    subscription = await get_owned_subscription(db, subscription_id, user, lock=True)
    if subscription.status != SubscriptionStatus.ACTIVE.value:
        raise BillingValidationError("Auto-renewal can only be changed on active subscriptions")
    if subscription.auto_renewal == enabled:
        return ActionOutcome(subscription, APPLIED, f"Auto-renewal already {'on' if enabled else 'off'}")

    if enabled:
        if subscription.cancelled_at is not None and subscription.razorpay_subscription_id:
            raise BillingValidationError(
                "Subscription is already scheduled to cancel at the end of the billing period"
            )
        subscription.auto_renewal = True
        subscription.cancelled_at = None
        await db.commit()
        logger.info(f"Subscription {subscription.uuid} auto_renewal turned on")
        return ActionOutcome(subscription, APPLIED, "Auto-renewal turned on")

    pending = await _gateway_action(
        db, subscription, "auto-renewal change",
        lambda gid: gateway.cancel_subscription(gid, at_cycle_end=True),
    )
    if pending:
        return pending

    sm.cancel(subscription, immediate=False, at=datetime.utcnow())
    await db.commit()
    logger.info(f"Subscription {subscription.uuid} auto_renewal turned off, cancels at cycle end")
    return ActionOutcome(subscription, APPLIED, "Auto-renewal turned off")


async def list_user_subscriptions(
    db: AsyncSession,
    trader_id: str,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[Subscription], int]:
    query = Subscription.live().where(Subscription.trader_id == trader_id)
    if status:
        query = query.where(Subscription.status == status)
    count_result = await db.execute(select(func.count()).select_from(query.subquery()))
    total = count_result.scalar() or 0
    result = await db.execute(query.order_by(Subscription.created_at.desc()).offset(skip).limit(limit))
    return list(result.scalars().all()), total


async def list_expiring_soon(db: AsyncSession, trader_id: str, days: int = 7) -> List[Subscription]:
    """Active subscriptions that will lapse within `days` because auto-renewal is off."""
    now = datetime.utcnow()
    result = await db.execute(
        Subscription.live()
        .where(
            Subscription.trader_id == trader_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.auto_renewal.is_(False),
            Subscription.expires_at > now,
            Subscription.expires_at <= now + timedelta(days=days),
        )
        .order_by(Subscription.expires_at)
    )
    return list(result.scalars().all())
