"""Routes verified Razorpay webhook events to subscription transitions.

Each handler performs at most one ledger insert and one transition and
commits them together. Charge events check the ledger first so a
redelivered payment never reaches the transition code. A webhook that
names an unknown subscription raises `SubscriptionNotFoundError`; the
platform never creates subscriptions from webhooks.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import REVENUE_TYPES, TERMINAL_STATUSES, TransactionStatus, TransactionType
from app.models.payment_transaction import PaymentTransaction
from app.models.subscription import Subscription
from app.models.subscription_tier import SubscriptionTier
from app.models.user import User
from app.services import ledger
from app.services import subscription_state as sm
from app.services.email_service import EmailService
from app.services.exceptions import BillingValidationError, NotFoundError, SubscriptionNotFoundError
from app.services.ledger import LedgerEntry
from app.services.refunds import cancel_after_full_refund

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
IGNORED = "ignored"

CHARGE_EVENTS = ("subscription.activated", "subscription.charged")


@dataclass
class WebhookResult:
    status: str
    subscription_id: Optional[str] = None
    transition: Optional[sm.Transition] = None
    message: str = ""


def entity(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    """Unwrap payload[key]["entity"]; bare entities are accepted too."""
    value = payload.get(key) or {}
    if not isinstance(value, dict):
        return {}
    inner = value.get("entity")
    return inner if isinstance(inner, dict) else value


def from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.utcfromtimestamp(int(value))
    except (TypeError, ValueError, OverflowError):
        return None


async def load_subscription(db: AsyncSession, gateway_subscription_id: Optional[str]) -> Subscription:
    """Lock the subscription row for the rest of the transaction."""
    if not gateway_subscription_id:
        raise SubscriptionNotFoundError(gateway_subscription_id)
    result = await db.execute(
        Subscription.live()
        .where(Subscription.razorpay_subscription_id == gateway_subscription_id)
        .with_for_update()
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise SubscriptionNotFoundError(gateway_subscription_id)
    return subscription


async def _has_captured_charge(db: AsyncSession, subscription_id: str) -> bool:
    result = await db.execute(
        select(func.count(PaymentTransaction.uuid)).where(
            PaymentTransaction.subscription_id == subscription_id,
            PaymentTransaction.transaction_type.in_(REVENUE_TYPES),
            PaymentTransaction.status.in_((TransactionStatus.CAPTURED.value, TransactionStatus.REFUNDED.value)),
        )
    )
    return (result.scalar() or 0) > 0


def _is_unactivated(subscription: Subscription) -> bool:
    return subscription.status == sm.PENDING or (
        subscription.status == sm.SUSPENDED and subscription.cycles_billed == 0
    )


async def _notify(db: AsyncSession, subscription: Subscription, transition: sm.Transition, event_type: str) -> None:
    """Send the lifecycle email for a committed transition."""
    result = await db.execute(select(User).where(User.uuid == subscription.trader_id))
    user = result.scalar_one_or_none()
    if user is None:
        return

    if event_type in CHARGE_EVENTS:
        if transition.changed and transition.current == sm.ACTIVE and subscription.cycles_billed == 1:
            tier = await db.get(SubscriptionTier, subscription.tier_id)
            EmailService.send_subscription_activated(user, subscription, tier.name if tier else "analyst")
    elif event_type in ("payment.failed", "subscription.halted"):
        if transition.changed and transition.current == sm.SUSPENDED:
            EmailService.send_subscription_suspended(user, subscription)
        elif event_type == "payment.failed" and transition.current in (sm.ACTIVE, sm.PENDING):
            EmailService.send_payment_failed(user, subscription)


async def _retire_superseded(db: AsyncSession, subscription: Subscription) -> None:
    """Close an upgraded-from subscription once its replacement activates."""
    result = await db.execute(
        Subscription.live()
        .where(
            Subscription.trader_id == subscription.trader_id,
            Subscription.analyst_id == subscription.analyst_id,
            Subscription.status == sm.ACTIVE,
            Subscription.uuid != subscription.uuid,
        )
        .with_for_update()
    )
    for previous in result.scalars().all():
        if previous.cancelled_at is not None and not previous.auto_renewal:
            sm.cancel(previous, immediate=True, at=datetime.utcnow())
            logger.info(f"Subscription {previous.uuid} superseded by {subscription.uuid}")


async def handle_charge(db: AsyncSession, event_type: str, payload: Dict[str, Any]) -> WebhookResult:
    """subscription.activated / subscription.charged."""
    sub_entity = entity(payload, "subscription")
    payment = entity(payload, "payment")
    payment_id = payment.get("id")

    if payment_id and await ledger.find_by_gateway_payment_id(db, payment_id) is not None:
        logger.info(f"{event_type}: payment {payment_id} already recorded, no-op")
        return WebhookResult(DUPLICATE, message="Payment already recorded")

    subscription = await load_subscription(db, sub_entity.get("id"))
    paid_at = from_epoch(payment.get("created_at")) or from_epoch(sub_entity.get("current_start")) or datetime.utcnow()

    if not payment_id:
        if not _is_unactivated(subscription):
            logger.info(f"{event_type}: subscription {subscription.uuid} already {subscription.status}, no-op")
            return WebhookResult(DUPLICATE, subscription.uuid, message="Subscription already active")
        transition = sm.activate(
            subscription, sm.ChargeCaptured(amount=subscription.final_price, gateway_payment_id=None, paid_at=paid_at)
        )
        await _retire_superseded(db, subscription)
        await db.commit()
        await _notify(db, subscription, transition, event_type)
        return WebhookResult(PROCESSED, subscription.uuid, transition)

    amount = int(payment.get("amount") or subscription.final_price)
    first_charge = _is_unactivated(subscription) or not await _has_captured_charge(db, subscription.uuid)
    tx_type = TransactionType.SUBSCRIPTION_PAYMENT if first_charge else TransactionType.RENEWAL

    _, created = await ledger.record_transaction(db, LedgerEntry(
        gateway_payment_id=payment_id,
        gateway_order_id=payment.get("order_id"),
        transaction_type=tx_type.value,
        amount=amount,
        currency=payment.get("currency") or settings.CURRENCY,
        status=TransactionStatus.CAPTURED.value,
        payment_method=payment.get("method"),
        analyst_id=subscription.analyst_id,
        trader_id=subscription.trader_id,
        subscription_id=subscription.uuid,
        details={"webhook_event": event_type},
    ))
    if not created:
        return WebhookResult(DUPLICATE, message="Payment already recorded")

    if subscription.status in TERMINAL_STATUSES:
        # Money moved after the subscription ended; keep the record, no transition.
        logger.warning(
            f"{event_type}: payment {payment_id} captured on {subscription.status} subscription {subscription.uuid}"
        )
        transition = sm.Transition(subscription.status, subscription.status)
    elif _is_unactivated(subscription):
        transition = sm.activate(
            subscription, sm.ChargeCaptured(amount=amount, gateway_payment_id=payment_id, paid_at=paid_at)
        )
        await _retire_superseded(db, subscription)
    elif first_charge:
        # Activated earlier without a payment entity; this charge pays that first cycle.
        transition = sm.Transition(subscription.status, subscription.status)
    else:
        transition = sm.renew(subscription, sm.build_renewal(subscription, amount, payment_id))

    await db.commit()
    logger.info(
        f"{event_type}: recorded {tx_type.value} {payment_id} for subscription {subscription.uuid} "
        f"({transition.previous} -> {transition.current}, expires {subscription.expires_at})"
    )
    await _notify(db, subscription, transition, event_type)
    return WebhookResult(PROCESSED, subscription.uuid, transition)


async def handle_payment_failed(db: AsyncSession, event_type: str, payload: Dict[str, Any]) -> WebhookResult:
    payment = entity(payload, "payment")
    payment_id = payment.get("id")
    if not payment_id:
        logger.warning("payment.failed without payment id, ignoring")
        return WebhookResult(IGNORED, message="Missing payment id")

    if await ledger.find_by_gateway_payment_id(db, payment_id) is not None:
        logger.info(f"payment.failed: payment {payment_id} already recorded, no-op")
        return WebhookResult(DUPLICATE, message="Payment already recorded")

    notes = payment.get("notes") or {}
    gateway_subscription_id = (
        (notes.get("subscription_id") if isinstance(notes, dict) else None)
        or entity(payload, "subscription").get("id")
        or payment.get("subscription_id")
    )
    if not gateway_subscription_id:
        logger.info(f"payment.failed: payment {payment_id} has no subscription reference, ignoring")
        return WebhookResult(IGNORED, message="Not a subscription payment")

    subscription = await load_subscription(db, gateway_subscription_id)
    failed_at = from_epoch(payment.get("created_at")) or datetime.utcnow()
    terminal = subscription.status in TERMINAL_STATUSES

    _, created = await ledger.record_transaction(db, LedgerEntry(
        gateway_payment_id=payment_id,
        gateway_order_id=payment.get("order_id"),
        transaction_type=(
            TransactionType.SUBSCRIPTION_PAYMENT.value if subscription.cycles_billed == 0
            else TransactionType.RENEWAL.value
        ),
        amount=int(payment.get("amount") or subscription.final_price),
        currency=payment.get("currency") or settings.CURRENCY,
        status=TransactionStatus.FAILED.value,
        payment_method=payment.get("method"),
        failure_reason=payment.get("error_description"),
        failure_code=payment.get("error_code"),
        retry_count=(
            subscription.payment_retry_count if terminal
            else min(subscription.payment_retry_count + 1, settings.MAX_PAYMENT_RETRIES)
        ),
        analyst_id=subscription.analyst_id,
        trader_id=subscription.trader_id,
        subscription_id=subscription.uuid,
        details={"webhook_event": event_type},
    ))
    if not created:
        return WebhookResult(DUPLICATE, message="Payment already recorded")

    if terminal:
        logger.warning(f"payment.failed on {subscription.status} subscription {subscription.uuid}, recorded only")
        transition = sm.Transition(subscription.status, subscription.status)
    else:
        transition = sm.record_payment_failure(subscription, sm.PaymentFailure(
            gateway_payment_id=payment_id,
            amount=int(payment.get("amount") or subscription.final_price),
            failed_at=failed_at,
            reason=payment.get("error_description"),
            code=payment.get("error_code"),
        ))

    await db.commit()
    if transition.current == sm.SUSPENDED and transition.changed:
        logger.warning(
            f"Subscription {subscription.uuid} suspended after {subscription.payment_retry_count} failed payments"
        )
    else:
        logger.info(
            f"payment.failed: subscription {subscription.uuid} retry "
            f"{subscription.payment_retry_count}/{settings.MAX_PAYMENT_RETRIES}"
        )
    await _notify(db, subscription, transition, event_type)
    return WebhookResult(PROCESSED, subscription.uuid, transition)


async def _state_event(
    db: AsyncSession,
    event_type: str,
    payload: Dict[str, Any],
    applies: Callable[[Subscription], bool],
    apply: Callable[[Subscription, datetime], sm.Transition],
) -> WebhookResult:
    """Shared shape of events that carry a subscription state change only."""
    subscription = await load_subscription(db, entity(payload, "subscription").get("id"))
    if not applies(subscription):
        logger.info(f"{event_type}: subscription {subscription.uuid} is {subscription.status}, no-op")
        return WebhookResult(DUPLICATE, subscription.uuid)

    transition = apply(subscription, datetime.utcnow())
    await db.commit()
    logger.info(f"{event_type}: subscription {subscription.uuid} {transition.previous} -> {transition.current}")
    await _notify(db, subscription, transition, event_type)
    return WebhookResult(PROCESSED, subscription.uuid, transition)


async def handle_cancelled(db, event_type, payload):
    return await _state_event(
        db, event_type, payload,
        applies=lambda s: s.status not in TERMINAL_STATUSES,
        apply=lambda s, now: sm.cancel(s, immediate=True, at=now),
    )


async def handle_paused(db, event_type, payload):
    return await _state_event(
        db, event_type, payload,
        applies=lambda s: s.status == sm.ACTIVE,
        apply=sm.pause,
    )


async def handle_resumed(db, event_type, payload):
    return await _state_event(
        db, event_type, payload,
        applies=lambda s: s.status == sm.SUSPENDED,
        apply=lambda s, now: sm.resume(s),
    )


async def handle_completed(db, event_type, payload):
    return await _state_event(
        db, event_type, payload,
        applies=lambda s: s.status in (sm.ACTIVE, sm.SUSPENDED),
        apply=sm.expire,
    )


async def handle_halted(db, event_type, payload):
    """The gateway gave up retrying; stop retrying locally as well."""
    return await _state_event(
        db, event_type, payload,
        applies=lambda s: s.status not in TERMINAL_STATUSES,
        apply=sm.force_suspend,
    )


async def handle_refund_processed(db: AsyncSession, event_type: str, payload: Dict[str, Any]) -> WebhookResult:
    refund = entity(payload, "refund")
    payment_id = refund.get("payment_id") or entity(payload, "payment").get("id")
    refund_id = refund.get("id")
    if not payment_id or not refund_id:
        logger.warning("refund.processed without payment or refund id, ignoring")
        return WebhookResult(IGNORED, message="Missing refund identifiers")

    notes = refund.get("notes") or {}
    try:
        transaction, changed = await ledger.record_refund(
            db,
            gateway_payment_id=payment_id,
            amount=refund.get("amount"),
            reason=notes.get("reason") if isinstance(notes, dict) else None,
            gateway_refund_id=refund_id,
            refunded_at=from_epoch(refund.get("created_at")),
        )
    except NotFoundError:
        await db.rollback()
        logger.warning(f"refund.processed for unknown payment {payment_id}, ignoring")
        return WebhookResult(IGNORED, message="Unknown payment")
    except BillingValidationError as e:
        await db.rollback()
        logger.warning(f"refund.processed {refund_id} not applied to {payment_id}: {e.message}")
        return WebhookResult(IGNORED, message=e.message)

    if not changed:
        await db.rollback()
        return WebhookResult(DUPLICATE, transaction.subscription_id, message="Refund already recorded")

    transition = await cancel_after_full_refund(db, transaction)
    await db.commit()
    return WebhookResult(PROCESSED, transaction.subscription_id, transition)


async def handle_acknowledged(db: AsyncSession, event_type: str, payload: Dict[str, Any]) -> WebhookResult:
    """payment.authorized / payment.captured: the subscription events carry the state change."""
    logger.info(f"{event_type}: payment {entity(payload, 'payment').get('id')} acknowledged")
    return WebhookResult(IGNORED)


Handler = Callable[[AsyncSession, str, Dict[str, Any]], Awaitable[WebhookResult]]

EVENT_HANDLERS: Dict[str, Handler] = {
    "subscription.activated": handle_charge,
    "subscription.charged": handle_charge,
    "subscription.completed": handle_completed,
    "subscription.cancelled": handle_cancelled,
    "subscription.paused": handle_paused,
    "subscription.resumed": handle_resumed,
    "subscription.halted": handle_halted,
    "payment.authorized": handle_acknowledged,
    "payment.captured": handle_acknowledged,
    "payment.failed": handle_payment_failed,
    "refund.processed": handle_refund_processed,
}


async def process_webhook_event(db: AsyncSession, event_type: str, payload: Dict[str, Any]) -> WebhookResult:
    """Dispatch one verified event. Errors propagate to the caller, which owns rollback."""
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info(f"Unhandled webhook event type: {event_type}")
        return WebhookResult(IGNORED, message=f"Unhandled event type {event_type}")

    logger.info(f"Processing webhook event {event_type}")
    return await handler(db, event_type, payload or {})
