"""Schemas for webhook outbox endpoints."""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Body returned to the gateway; always sent with 200."""
    received: bool = True
    event_id: Optional[str] = None


class WebhookEventResponse(BaseModel):
    uuid: str
    event_id: Optional[str] = None
    event_type: str
    status: str
    attempts: int
    last_error: Optional[str] = None
    received_at: datetime
    processed_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WebhookEventListResponse(BaseModel):
    items: list[WebhookEventResponse]
    total: int
    skip: int
    limit: int


class WebhookReplayResponse(BaseModel):
    uuid: str
    status: Optional[str] = None
