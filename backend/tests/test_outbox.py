"""Tests for the webhook outbox: storage, processing outcomes and replay."""
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.models.subscription import Subscription
from app.models.webhook_event import WebhookEvent
from app.services import webhook_outbox as outbox

from conftest import charge_payload, make_subscription


async def _event(session_factory, event_uuid) -> WebhookEvent:
    async with session_factory() as db:
        return await db.get(WebhookEvent, event_uuid)


def test_backoff_doubles():
    assert outbox.backoff_delay(1) == timedelta(minutes=2)
    assert outbox.backoff_delay(2) == timedelta(minutes=4)
    assert outbox.backoff_delay(3) == timedelta(minutes=8)


@pytest.mark.asyncio
async def test_store_event_deduplicates_by_event_id(test_db):
    first, created = await outbox.store_event(test_db, "subscription.charged", {"a": 1}, event_id="evt_1")
    assert created is True
    assert first.status == "pending"
    assert first.attempts == 0

    again, created = await outbox.store_event(test_db, "subscription.charged", {"a": 1}, event_id="evt_1")
    assert created is False
    assert again.uuid == first.uuid

    # Events without a gateway id are always stored
    _, created_a = await outbox.store_event(test_db, "payment.captured", {})
    _, created_b = await outbox.store_event(test_db, "payment.captured", {})
    assert created_a and created_b


@pytest.mark.asyncio
async def test_run_event_processes_and_marks(test_db, session_factory, trader, tier):
    sub = await make_subscription(test_db, trader, tier)
    event, _ = await outbox.store_event(
        test_db, "subscription.activated", charge_payload("sub_test_1", "pay_1"), event_id="evt_act"
    )

    status = await outbox.run_event(session_factory, event.uuid)

    assert status == "processed"
    stored = await _event(session_factory, event.uuid)
    assert stored.attempts == 1
    assert stored.processed_at is not None
    assert stored.next_attempt_at is None
    async with session_factory() as db:
        assert (await db.get(Subscription, sub.uuid)).status == "active"

    # A processed event is never run again
    assert await outbox.run_event(session_factory, event.uuid) is None


@pytest.mark.asyncio
async def test_unknown_subscription_is_dead_lettered(test_db, session_factory):
    event, _ = await outbox.store_event(test_db, "subscription.charged", charge_payload("sub_missing", "pay_1"))

    status = await outbox.run_event(session_factory, event.uuid)

    assert status == "dead_letter"
    stored = await _event(session_factory, event.uuid)
    assert stored.attempts == 1
    assert "sub_missing" in stored.last_error
    assert stored.next_attempt_at is None

    # Dead letters are skipped unless forced
    assert await outbox.run_event(session_factory, event.uuid) is None


@pytest.mark.asyncio
async def test_failed_event_backs_off_then_dead_letters(test_db, session_factory, monkeypatch):
    async def broken(db, event_type, payload):
        raise RuntimeError("database hiccup")

    monkeypatch.setattr(outbox, "process_webhook_event", broken)
    monkeypatch.setattr(outbox.settings, "WEBHOOK_MAX_ATTEMPTS", 2)
    event, _ = await outbox.store_event(test_db, "subscription.charged", {})

    before = datetime.utcnow()
    assert await outbox.run_event(session_factory, event.uuid) == "failed"
    stored = await _event(session_factory, event.uuid)
    assert stored.attempts == 1
    assert stored.last_error == "RuntimeError: database hiccup"
    assert stored.next_attempt_at >= before + timedelta(minutes=2)

    assert await outbox.run_event(session_factory, event.uuid) == "dead_letter"
    assert (await _event(session_factory, event.uuid)).attempts == 2


@pytest.mark.asyncio
async def test_forced_replay_recovers_dead_letter(test_db, session_factory, trader, tier):
    event, _ = await outbox.store_event(
        test_db, "subscription.activated", charge_payload("sub_late", "pay_1"), event_id="evt_late"
    )
    assert await outbox.run_event(session_factory, event.uuid) == "dead_letter"

    # The subscription row shows up later, e.g. after a delayed checkout commit
    await make_subscription(test_db, trader, tier, gateway_id="sub_late")

    assert await outbox.run_event(session_factory, event.uuid, force=True) == "processed"
    stored = await _event(session_factory, event.uuid)
    assert stored.attempts == 2
    assert stored.last_error is None


@pytest.mark.asyncio
async def test_replay_due_events(test_db, session_factory, trader, tier):
    await make_subscription(test_db, trader, tier)
    due, _ = await outbox.store_event(test_db, "subscription.activated", charge_payload("sub_test_1", "pay_1"))
    orphan, _ = await outbox.store_event(test_db, "subscription.charged", charge_payload("sub_gone", "pay_2"))
    later, _ = await outbox.store_event(test_db, "payment.captured", {})

    later_row = await test_db.get(WebhookEvent, later.uuid)
    later_row.next_attempt_at = datetime.utcnow() + timedelta(hours=1)
    await test_db.commit()

    counts = await outbox.replay_due_events(session_factory, now=datetime.utcnow() + timedelta(minutes=5))

    assert counts == {"processed": 1, "failed": 0, "dead_letter": 1}
    assert (await _event(session_factory, due.uuid)).status == "processed"
    assert (await _event(session_factory, orphan.uuid)).status == "dead_letter"
    assert (await _event(session_factory, later.uuid)).status == "pending"


@pytest.mark.asyncio
async def test_list_events_filters_by_status(test_db, session_factory):
    await outbox.store_event(test_db, "payment.captured", {}, event_id="evt_a")
    dead, _ = await outbox.store_event(test_db, "subscription.charged", charge_payload("sub_x", "pay_x"))
    await outbox.run_event(session_factory, dead.uuid)

    events, total = await outbox.list_events(test_db, status="dead_letter")
    assert total == 1
    assert events[0].uuid == dead.uuid

    _, total = await outbox.list_events(test_db)
    assert total == 2
