"""Razorpay webhook intake and the admin view of the webhook outbox."""
import json
import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db, get_session_factory
from app.models.user import User
from app.models.enums import WebhookEventStatus
from app.models.webhook_event import WebhookEvent
from app.schemas.webhooks import (
    WebhookAck, WebhookEventListResponse, WebhookReplayResponse,
)
from app.auth.dependencies import admin_required
from app.services.signature import verify_webhook_signature
from app.services.webhook_outbox import list_events, run_event, store_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/api/webhooks/razorpay", response_model=WebhookAck)
async def razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """
    Handle Razorpay webhook events.

    - Verifies the X-Razorpay-Signature HMAC over the raw body
    - Stores the event in the outbox and acknowledges with 200
    - Processes the event after the response; failures are retried by the scheduler
    """
    body = await request.body()
    signature = request.headers.get("x-razorpay-signature")

    if not signature:
        logger.warning("Webhook rejected: missing signature header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing signature"
        )
    if not verify_webhook_signature(body, signature):
        logger.warning("Webhook rejected: invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    try:
        data = json.loads(body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload"
        )
    if not isinstance(data, dict) or not data.get("event"):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload"
        )

    event, created = await store_event(
        db,
        data["event"],
        data.get("payload") or {},
        event_id=request.headers.get("x-razorpay-event-id"),
    )
    if created:
        background_tasks.add_task(run_event, session_factory, event.uuid)
    else:
        logger.info(f"Webhook {event.event_id} ({event.event_type}) already received, status {event.status}")

    return {"received": True, "event_id": event.uuid}


@router.get("/api/admin/webhooks", response_model=WebhookEventListResponse)
async def list_webhook_events(
    status_filter: Optional[WebhookEventStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    admin: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db)
):
    """List stored webhook events, e.g. `?status=dead_letter` for the ones needing attention."""
    items, total = await list_events(
        db, status=status_filter.value if status_filter else None, skip=skip, limit=limit
    )
    return {"items": items, "total": total, "skip": skip, "limit": limit}


@router.post("/api/admin/webhooks/{event_id}/replay", response_model=WebhookReplayResponse)
async def replay_webhook_event(
    event_id: str,
    admin: User = Depends(admin_required),
    db: AsyncSession = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Run a stored event again now, including dead-lettered ones."""
    event = await db.get(WebhookEvent, event_id)
    if event is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Webhook event not found"
        )
    # Release this session's snapshot before the replay opens its own.
    await db.close()

    result = await run_event(session_factory, event_id, force=True)
    logger.info(f"Admin {admin.uuid} replayed webhook {event_id}: {result}")
    return {"uuid": event_id, "status": result}
