"""Refunds of captured subscription payments."""
import logging
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.enums import REVENUE_TYPES, TransactionStatus
from app.models.payment_transaction import PaymentTransaction
from app.models.subscription import Subscription
from app.services import ledger
from app.services import subscription_state as sm
from app.services.exceptions import BillingValidationError, NotFoundError
from app.services.gateway import PaymentGateway

logger = logging.getLogger(__name__)


async def cancel_after_full_refund(db: AsyncSession, transaction: PaymentTransaction) -> Optional[sm.Transition]:
    """A fully refunded charge ends an active subscription immediately."""
    if transaction.subscription_id is None or transaction.refund_amount != transaction.amount:
        return None
    result = await db.execute(
        Subscription.live().where(Subscription.uuid == transaction.subscription_id).with_for_update()
    )
    subscription = result.scalar_one_or_none()
    if subscription is None or subscription.status != sm.ACTIVE:
        return None
    transition = sm.cancel(subscription, immediate=True, at=datetime.utcnow())
    logger.info(f"Subscription {subscription.uuid} cancelled after full refund of {transaction.gateway_payment_id}")
    return transition


async def process_refund(
    db: AsyncSession,
    gateway: PaymentGateway,
    gateway_payment_id: str,
    amount: Optional[int] = None,
    reason: str = "Customer request",
) -> Tuple[PaymentTransaction, Optional[sm.Transition]]:
    """
    Refund a captured payment, fully when `amount` is None.

    Rules are checked before the gateway is called; the ledger
    annotation and any cancellation commit together afterwards.
    """
    transaction = await ledger.find_by_gateway_payment_id(db, gateway_payment_id)
    if transaction is None or transaction.transaction_type not in REVENUE_TYPES:
        raise NotFoundError("Payment not found")
    if transaction.status == TransactionStatus.REFUNDED.value:
        raise BillingValidationError("Payment already refunded")
    if transaction.status != TransactionStatus.CAPTURED.value:
        raise BillingValidationError("Only captured payments can be refunded")
    refund_amount = transaction.amount if amount is None else amount
    if refund_amount <= 0:
        raise BillingValidationError("Refund amount must be positive")
    if refund_amount > transaction.amount:
        raise BillingValidationError("Refund amount cannot exceed payment amount")

    refund = await gateway.refund_payment(gateway_payment_id, refund_amount, notes={"reason": reason})

    transaction, _ = await ledger.record_refund(
        db,
        gateway_payment_id=gateway_payment_id,
        amount=refund_amount,
        reason=reason,
        gateway_refund_id=refund.id,
    )
    transition = await cancel_after_full_refund(db, transaction)
    await db.commit()
    logger.info(f"Refunded {refund_amount} of payment {gateway_payment_id} (refund {refund.id})")
    return transaction, transition
