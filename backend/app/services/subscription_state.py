"""Subscription lifecycle transitions.

Every function here mutates a `Subscription` in memory and never
touches the session; callers own the transaction so that a transition
and its ledger row commit together.

Renewal dates are computed from `start_date` and the number of cycles
billed so far, never from "now" or from a previously clamped
`expires_at`, so the billing anchor never drifts.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from app.config import settings
from app.models.enums import BillingCycle, SubscriptionStatus
from app.models.subscription import Subscription
from app.services.exceptions import InvalidTransitionError

PENDING = SubscriptionStatus.PENDING_PAYMENT.value
ACTIVE = SubscriptionStatus.ACTIVE.value
SUSPENDED = SubscriptionStatus.SUSPENDED.value
CANCELLED = SubscriptionStatus.CANCELLED.value
EXPIRED = SubscriptionStatus.EXPIRED.value

ALLOWED_TRANSITIONS = {
    PENDING: {ACTIVE, SUSPENDED, CANCELLED},
    ACTIVE: {ACTIVE, SUSPENDED, CANCELLED, EXPIRED},
    SUSPENDED: {ACTIVE, SUSPENDED, CANCELLED, EXPIRED},
    CANCELLED: set(),
    EXPIRED: set(),
}


@dataclass(frozen=True)
class Transition:
    previous: str
    current: str

    @property
    def changed(self) -> bool:
        return self.previous != self.current


@dataclass(frozen=True)
class ChargeCaptured:
    """First successful charge of a subscription."""
    amount: int
    gateway_payment_id: Optional[str]
    paid_at: datetime


@dataclass(frozen=True)
class RenewalEvent:
    amount: int
    gateway_payment_id: str
    new_expiry: datetime


@dataclass(frozen=True)
class PaymentFailure:
    gateway_payment_id: str
    amount: int
    failed_at: datetime
    reason: Optional[str] = None
    code: Optional[str] = None


def add_billing_cycles(start: datetime, billing_cycle: str, count: int) -> datetime:
    """Return `start` moved forward by `count` calendar months or years."""
    if billing_cycle == BillingCycle.YEARLY.value:
        return start + relativedelta(years=count)
    return start + relativedelta(months=count)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def _move(subscription: Subscription, target: str, action: str) -> Transition:
    previous = subscription.status
    if not can_transition(previous, target):
        raise InvalidTransitionError(previous, action)
    subscription.status = target
    return Transition(previous, target)


def _clear_retry_state(subscription: Subscription) -> None:
    subscription.payment_retry_count = 0
    subscription.grace_period_ends_at = None


def activate(subscription: Subscription, event: ChargeCaptured) -> Transition:
    """pending_payment -> active on the first captured charge.

    A subscription that was suspended before it was ever billed is
    activated the same way.
    """
    if not (subscription.status == PENDING or (subscription.status == SUSPENDED and subscription.cycles_billed == 0)):
        raise InvalidTransitionError(subscription.status, "activate")
    transition = _move(subscription, ACTIVE, "activate")
    subscription.start_date = event.paid_at
    subscription.cycles_billed = 1
    subscription.expires_at = add_billing_cycles(event.paid_at, subscription.billing_cycle, 1)
    subscription.next_billing_date = subscription.expires_at
    subscription.last_payment_attempt = event.paid_at
    subscription.suspended_at = None
    _clear_retry_state(subscription)
    return transition


def next_renewal_expiry(subscription: Subscription) -> datetime:
    """Expiry after one more billed cycle, anchored on start_date."""
    anchor = subscription.start_date or subscription.expires_at or datetime.utcnow()
    return add_billing_cycles(anchor, subscription.billing_cycle, subscription.cycles_billed + 1)


def build_renewal(subscription: Subscription, amount: int, gateway_payment_id: str) -> RenewalEvent:
    return RenewalEvent(
        amount=amount,
        gateway_payment_id=gateway_payment_id,
        new_expiry=next_renewal_expiry(subscription),
    )


def renew(subscription: Subscription, event: RenewalEvent) -> Transition:
    """Extend an active subscription by one cycle; also recovers a suspended one."""
    if subscription.status not in (ACTIVE, SUSPENDED):
        raise InvalidTransitionError(subscription.status, "renew")
    transition = _move(subscription, ACTIVE, "renew")
    subscription.cycles_billed += 1
    subscription.expires_at = event.new_expiry
    subscription.next_billing_date = event.new_expiry
    subscription.suspended_at = None
    _clear_retry_state(subscription)
    return transition


def record_payment_failure(subscription: Subscription, event: PaymentFailure) -> Transition:
    """
    Count a failed charge.

    The grace deadline is set on the first failure of a run only. The
    third consecutive failure suspends the subscription; the grace
    deadline is left in place so the sweep can expire it later.
    """
    if subscription.status not in (ACTIVE, PENDING, SUSPENDED):
        raise InvalidTransitionError(subscription.status, "record a payment failure on")

    max_retries = settings.MAX_PAYMENT_RETRIES
    subscription.last_payment_attempt = event.failed_at
    if subscription.payment_retry_count == 0 and subscription.grace_period_ends_at is None:
        subscription.grace_period_ends_at = event.failed_at + timedelta(days=settings.GRACE_PERIOD_DAYS)

    subscription.payment_retry_count = min(subscription.payment_retry_count + 1, max_retries)
    if subscription.payment_retry_count >= max_retries:
        transition = _move(subscription, SUSPENDED, "suspend")
        if transition.changed:
            subscription.suspended_at = event.failed_at
        return transition
    return Transition(subscription.status, subscription.status)


def cancel(subscription: Subscription, immediate: bool, at: datetime) -> Transition:
    """
    Cancel now, or at the end of the paid cycle.

    End-of-cycle cancellation keeps the subscription active with
    auto-renewal off; the expiry sweep moves it to cancelled.
    """
    if immediate:
        transition = _move(subscription, CANCELLED, "cancel")
        subscription.auto_renewal = False
        subscription.cancelled_at = at
        subscription.grace_period_ends_at = None
        return transition

    if subscription.status != ACTIVE:
        raise InvalidTransitionError(subscription.status, "cancel at cycle end")
    subscription.auto_renewal = False
    subscription.cancelled_at = at
    return Transition(ACTIVE, ACTIVE)


def pause(subscription: Subscription, at: datetime) -> Transition:
    if subscription.status != ACTIVE:
        raise InvalidTransitionError(subscription.status, "pause")
    transition = _move(subscription, SUSPENDED, "pause")
    subscription.suspended_at = at
    return transition


def resume(subscription: Subscription) -> Transition:
    if subscription.status != SUSPENDED:
        raise InvalidTransitionError(subscription.status, "resume")
    transition = _move(subscription, ACTIVE, "resume")
    subscription.suspended_at = None
    _clear_retry_state(subscription)
    return transition


def expire(subscription: Subscription, at: datetime) -> Transition:
    """
    Natural end of the paid period.

    A subscription already cancelled at cycle end finishes as cancelled,
    everything else as expired. Auto-renewal is forced off.
    """
    target = CANCELLED if subscription.cancelled_at is not None and not subscription.auto_renewal else EXPIRED
    transition = _move(subscription, target, "expire")
    subscription.auto_renewal = False
    subscription.grace_period_ends_at = None
    return transition


def force_suspend(subscription: Subscription, at: datetime) -> Transition:
    """
    Stop retrying: grace deadline passed or the gateway halted the subscription.

    The grace deadline is kept (or started, if none was running) so the
    grace sweep ends the subscription once it passes.
    """
    transition = _move(subscription, SUSPENDED, "suspend")
    subscription.payment_retry_count = settings.MAX_PAYMENT_RETRIES
    if subscription.grace_period_ends_at is None:
        subscription.grace_period_ends_at = at + timedelta(days=settings.GRACE_PERIOD_DAYS)
    if transition.changed:
        subscription.suspended_at = at
    return transition
