"""Durable outbox for webhook processing.

The HTTP endpoint stores each verified event and acknowledges it; the
event is then processed in its own session. Failed events back off
exponentially and are dead-lettered after WEBHOOK_MAX_ATTEMPTS tries.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.models.enums import WebhookEventStatus
from app.models.webhook_event import WebhookEvent
from app.services.exceptions import SubscriptionNotFoundError
from app.services.webhook_router import process_webhook_event

logger = logging.getLogger(__name__)

PENDING = WebhookEventStatus.PENDING.value
PROCESSED = WebhookEventStatus.PROCESSED.value
FAILED = WebhookEventStatus.FAILED.value
DEAD_LETTER = WebhookEventStatus.DEAD_LETTER.value


def backoff_delay(attempts: int) -> timedelta:
    """2, 4, 8, ... minutes after the n-th failed attempt."""
    return timedelta(minutes=2 ** attempts)


async def store_event(
    db: AsyncSession,
    event_type: str,
    payload: Dict[str, Any],
    event_id: Optional[str] = None,
) -> Tuple[WebhookEvent, bool]:
    """Persist an inbound event; a known gateway event id returns the stored row."""
    if event_id:
        result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
        existing = result.scalar_one_or_none()
        if existing is not None:
            return existing, False

    now = datetime.utcnow()
    event = WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        payload=payload,
        status=PENDING,
        attempts=0,
        received_at=now,
        # Leave the first attempt to the request's background task.
        next_attempt_at=now + backoff_delay(0),
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        result = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
        existing = result.scalar_one_or_none()
        if existing is None:
            raise
        return existing, False
    return event, True


async def run_event(session_factory, event_uuid: str, force: bool = False) -> Optional[str]:
    """
    Process one stored event in a fresh session and record the outcome.

    Returns the resulting outbox status, or None when there was nothing
    to do. Processing errors are logged and recorded, never raised.
    """
    async with session_factory() as db:
        event = await db.get(WebhookEvent, event_uuid)
        if event is None or event.status == PROCESSED:
            return None
        if event.status == DEAD_LETTER and not force:
            return None

        event_type = event.event_type
        payload = event.payload
        error: Optional[str] = None
        fatal = False
        try:
            result = await process_webhook_event(db, event_type, payload)
        except SubscriptionNotFoundError as e:
            await db.rollback()
            error, fatal = e.message, True
            logger.error(f"Webhook {event_uuid} ({event_type}) references unknown subscription: {e.message}")
        except Exception as e:
            await db.rollback()
            error = f"{type(e).__name__}: {e}"
            logger.exception(f"Webhook {event_uuid} ({event_type}) processing failed")
        else:
            logger.info(f"Webhook {event_uuid} ({event_type}) {result.status}")

        event = await db.get(WebhookEvent, event_uuid, populate_existing=True)
        now = datetime.utcnow()
        event.attempts += 1
        if error is None:
            event.status = PROCESSED
            event.processed_at = now
            event.last_error = None
            event.next_attempt_at = None
        elif fatal or event.attempts >= settings.WEBHOOK_MAX_ATTEMPTS:
            event.status = DEAD_LETTER
            event.last_error = error
            event.next_attempt_at = None
            logger.error(f"Webhook {event_uuid} ({event_type}) dead-lettered after {event.attempts} attempt(s): {error}")
        else:
            event.status = FAILED
            event.last_error = error
            event.next_attempt_at = now + backoff_delay(event.attempts)
        await db.commit()
        return event.status


async def replay_due_events(session_factory, now: Optional[datetime] = None, limit: int = 100) -> Dict[str, int]:
    """Re-run pending/failed events whose backoff has elapsed."""
    now = now or datetime.utcnow()
    async with session_factory() as db:
        result = await db.execute(
            select(WebhookEvent.uuid)
            .where(
                WebhookEvent.status.in_((PENDING, FAILED)),
                WebhookEvent.next_attempt_at <= now,
            )
            .order_by(WebhookEvent.received_at)
            .limit(limit)
        )
        due = list(result.scalars().all())

    counts = {PROCESSED: 0, FAILED: 0, DEAD_LETTER: 0}
    for event_uuid in due:
        status = await run_event(session_factory, event_uuid)
        if status in counts:
            counts[status] += 1
    if due:
        logger.info(
            f"Webhook replay: {len(due)} due, {counts[PROCESSED]} processed, "
            f"{counts[FAILED]} failed, {counts[DEAD_LETTER]} dead-lettered"
        )
    return counts


async def list_events(
    db: AsyncSession,
    status: Optional[str] = None,
    skip: int = 0,
    limit: int = 50,
) -> Tuple[List[WebhookEvent], int]:
    query = select(WebhookEvent)
    if status:
        query = query.where(WebhookEvent.status == status)
    count_result = await db.execute(select(func.count()).select_from(query.subquery()))
    total = count_result.scalar() or 0
    result = await db.execute(query.order_by(WebhookEvent.received_at.desc()).offset(skip).limit(limit))
    return list(result.scalars().all()), total
