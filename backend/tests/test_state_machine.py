"""Tests for subscription lifecycle transitions."""
from datetime import datetime, timedelta

import pytest

from app.models.subscription import Subscription
from app.services import subscription_state as sm
from app.services.exceptions import InvalidTransitionError


def _subscription(status=sm.PENDING, billing_cycle="monthly", **fields) -> Subscription:
    values = dict(
        trader_id="t", analyst_id="a", tier_id="tier", status=status, billing_cycle=billing_cycle,
        price_paid=99900, discount_applied=0, final_price=99900, cycles_billed=0,
        payment_retry_count=0, auto_renewal=True,
    )
    values.update(fields)
    return Subscription(**values)


def _failure(at: datetime, n: int = 1) -> sm.PaymentFailure:
    return sm.PaymentFailure(gateway_payment_id=f"pay_fail_{n}", amount=99900, failed_at=at)


def test_activate_sets_period_and_clears_retries():
    sub = _subscription(payment_retry_count=2, grace_period_ends_at=datetime(2024, 1, 20))
    paid_at = datetime(2024, 1, 15, 10, 30)

    transition = sm.activate(sub, sm.ChargeCaptured(amount=99900, gateway_payment_id="pay_1", paid_at=paid_at))

    assert transition == sm.Transition(sm.PENDING, sm.ACTIVE)
    assert sub.start_date == paid_at
    assert sub.expires_at == datetime(2024, 2, 15, 10, 30)
    assert sub.next_billing_date == sub.expires_at
    assert sub.cycles_billed == 1
    assert sub.payment_retry_count == 0
    assert sub.grace_period_ends_at is None


def test_activate_rejects_active_subscription():
    sub = _subscription(status=sm.ACTIVE, cycles_billed=1)
    with pytest.raises(InvalidTransitionError):
        sm.activate(sub, sm.ChargeCaptured(amount=1, gateway_payment_id="p", paid_at=datetime(2024, 1, 1)))


def test_activate_recovers_never_billed_suspension():
    sub = _subscription(status=sm.SUSPENDED, cycles_billed=0, payment_retry_count=3)
    sm.activate(sub, sm.ChargeCaptured(amount=1, gateway_payment_id="p", paid_at=datetime(2024, 1, 1)))
    assert sub.status == sm.ACTIVE
    assert sub.payment_retry_count == 0


def test_renewals_are_anchored_on_start_date():
    sub = _subscription()
    sm.activate(sub, sm.ChargeCaptured(amount=99900, gateway_payment_id="p0", paid_at=datetime(2024, 1, 15)))

    for n in range(2):
        sm.renew(sub, sm.build_renewal(sub, 99900, f"p{n + 1}"))

    assert sub.cycles_billed == 3
    assert sub.expires_at == datetime(2024, 4, 15)


def test_month_end_anchor_does_not_drift():
    sub = _subscription()
    sm.activate(sub, sm.ChargeCaptured(amount=1, gateway_payment_id="p0", paid_at=datetime(2024, 1, 31)))
    assert sub.expires_at == datetime(2024, 2, 29)

    sm.renew(sub, sm.build_renewal(sub, 1, "p1"))
    assert sub.expires_at == datetime(2024, 3, 31)


def test_yearly_renewal():
    sub = _subscription(billing_cycle="yearly")
    sm.activate(sub, sm.ChargeCaptured(amount=1, gateway_payment_id="p0", paid_at=datetime(2024, 2, 29)))
    assert sub.expires_at == datetime(2025, 2, 28)
    sm.renew(sub, sm.build_renewal(sub, 1, "p1"))
    assert sub.expires_at == datetime(2026, 2, 28)


def test_renewal_clears_failure_state_and_recovers_suspension():
    sub = _subscription(status=sm.SUSPENDED, cycles_billed=1, start_date=datetime(2024, 1, 1),
                        expires_at=datetime(2024, 2, 1), payment_retry_count=3,
                        grace_period_ends_at=datetime(2024, 2, 8), suspended_at=datetime(2024, 2, 3))
    transition = sm.renew(sub, sm.build_renewal(sub, 1, "p1"))
    assert transition.changed
    assert sub.status == sm.ACTIVE
    assert sub.expires_at == datetime(2024, 3, 1)
    assert sub.payment_retry_count == 0
    assert sub.grace_period_ends_at is None
    assert sub.suspended_at is None


def test_three_failures_suspend_and_grace_set_once():
    sub = _subscription(status=sm.ACTIVE, cycles_billed=1)
    first = datetime(2024, 3, 1)

    t1 = sm.record_payment_failure(sub, _failure(first, 1))
    assert not t1.changed
    assert sub.grace_period_ends_at == first + timedelta(days=7)

    sm.record_payment_failure(sub, _failure(first + timedelta(days=1), 2))
    assert sub.grace_period_ends_at == first + timedelta(days=7)
    assert sub.status == sm.ACTIVE

    t3 = sm.record_payment_failure(sub, _failure(first + timedelta(days=2), 3))
    assert t3 == sm.Transition(sm.ACTIVE, sm.SUSPENDED)
    assert sub.payment_retry_count == 3
    assert sub.grace_period_ends_at == first + timedelta(days=7)
    assert sub.suspended_at == first + timedelta(days=2)


def test_failure_count_never_exceeds_ceiling():
    sub = _subscription(status=sm.SUSPENDED, cycles_billed=1, payment_retry_count=3)
    sm.record_payment_failure(sub, _failure(datetime(2024, 3, 5), 4))
    assert sub.payment_retry_count == 3
    assert sub.status == sm.SUSPENDED


def test_pending_checkout_suspends_after_three_failures():
    sub = _subscription()
    for n in range(3):
        sm.record_payment_failure(sub, _failure(datetime(2024, 3, 1) + timedelta(days=n), n))
    assert sub.status == sm.SUSPENDED


def test_cancel_at_cycle_end_keeps_access():
    sub = _subscription(status=sm.ACTIVE, cycles_billed=1)
    now = datetime(2024, 3, 10)
    transition = sm.cancel(sub, immediate=False, at=now)
    assert not transition.changed
    assert sub.status == sm.ACTIVE
    assert sub.auto_renewal is False
    assert sub.cancelled_at == now


def test_cancel_at_cycle_end_requires_active():
    sub = _subscription(status=sm.SUSPENDED, cycles_billed=1)
    with pytest.raises(InvalidTransitionError):
        sm.cancel(sub, immediate=False, at=datetime(2024, 3, 10))
    assert sub.auto_renewal is True
    assert sub.cancelled_at is None


def test_immediate_cancel_from_suspended():
    sub = _subscription(status=sm.SUSPENDED, cycles_billed=1, grace_period_ends_at=datetime(2024, 3, 1))
    transition = sm.cancel(sub, immediate=True, at=datetime(2024, 2, 25))
    assert transition == sm.Transition(sm.SUSPENDED, sm.CANCELLED)
    assert sub.auto_renewal is False
    assert sub.grace_period_ends_at is None


@pytest.mark.parametrize("terminal", [sm.CANCELLED, sm.EXPIRED])
def test_terminal_states_reject_everything(terminal):
    sub = _subscription(status=terminal, cycles_billed=1, start_date=datetime(2024, 1, 1))
    now = datetime(2024, 5, 1)
    with pytest.raises(InvalidTransitionError):
        sm.renew(sub, sm.build_renewal(sub, 1, "p"))
    with pytest.raises(InvalidTransitionError):
        sm.cancel(sub, immediate=True, at=now)
    with pytest.raises(InvalidTransitionError):
        sm.resume(sub)
    with pytest.raises(InvalidTransitionError):
        sm.record_payment_failure(sub, _failure(now))
    assert sub.status == terminal


def test_pause_keeps_retry_counter_and_resume_clears_it():
    sub = _subscription(status=sm.ACTIVE, cycles_billed=1, payment_retry_count=1,
                        grace_period_ends_at=datetime(2024, 3, 8))
    sm.pause(sub, datetime(2024, 3, 2))
    assert sub.status == sm.SUSPENDED
    assert sub.payment_retry_count == 1

    sm.resume(sub)
    assert sub.status == sm.ACTIVE
    assert sub.payment_retry_count == 0
    assert sub.grace_period_ends_at is None


def test_expire_finishes_cancelled_at_cycle_end_as_cancelled():
    sub = _subscription(status=sm.ACTIVE, cycles_billed=1)
    sm.cancel(sub, immediate=False, at=datetime(2024, 3, 1))
    assert sm.expire(sub, datetime(2024, 4, 1)).current == sm.CANCELLED


def test_expire_without_cancellation():
    sub = _subscription(status=sm.ACTIVE, cycles_billed=1)
    assert sm.expire(sub, datetime(2024, 4, 1)).current == sm.EXPIRED
    assert sub.auto_renewal is False


def test_force_suspend_stops_retries_and_starts_grace():
    sub = _subscription(status=sm.ACTIVE, cycles_billed=1, payment_retry_count=1)
    at = datetime(2024, 3, 1)
    transition = sm.force_suspend(sub, at)
    assert transition == sm.Transition(sm.ACTIVE, sm.SUSPENDED)
    assert sub.payment_retry_count == 3
    assert sub.grace_period_ends_at == at + timedelta(days=7)


def test_transition_table():
    assert sm.can_transition(sm.PENDING, sm.ACTIVE)
    assert not sm.can_transition(sm.PENDING, sm.EXPIRED)
    assert sm.can_transition(sm.SUSPENDED, sm.CANCELLED)
    assert not sm.can_transition(sm.EXPIRED, sm.ACTIVE)
    assert not sm.can_transition(sm.CANCELLED, sm.ACTIVE)
